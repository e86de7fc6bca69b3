from typing import Iterable, List, Optional

from core.exceptions import SyncException
from core.logger import get_logger
from models.asset import Asset
from models.outcome import ItemOutcome, OutcomeStatus, SyncOp
from repositories.content_store import ContentStore
from repositories.image_repo import ImageRepository
from repositories.manifest_repo import ManifestRepository

logger = get_logger(__name__)


class OrphanCleaner:
    """
    Retires manifest directories of submissions that no longer exist on the
    server, together with the images they describe.

    Callers must only pass a complete, unfiltered list of current ids.
    """

    def __init__(
        self,
        manifests: ManifestRepository,
        images: ImageRepository,
        store: Optional[ContentStore] = None,
    ):
        self.manifests = manifests
        self.images = images
        self.store = store or ContentStore()

    def orphan_ids(self, asset: Asset, current_ids: Iterable[int]) -> List[int]:
        current = set(current_ids)
        names = self.store.list_dir(self.manifests.asset_dir(asset.uid), dirs_only=True, numeric_only=True)
        return [int(name) for name in names if int(name) not in current]

    def _clean_submission(self, asset: Asset, submission_id: int) -> List[ItemOutcome]:
        outcomes: List[ItemOutcome] = []
        submission_dir = self.manifests.submission_dir(asset.uid, submission_id)

        for name in self.store.list_dir(submission_dir):
            if not name.endswith(".json"):
                continue
            field = name[: -len(".json")]
            path = None
            try:
                manifest = self.manifests.load_path(submission_dir / name)
                path = self.images.path_for(asset, manifest.image_name)
                if self.store.is_file(path):
                    detail = self.images.retire(asset, manifest.image_name, manifest.digest)
                else:
                    detail = "file already absent"
            except (SyncException, OSError) as e:
                logger.error(f"[CLEANUP] Orphan {asset.uid}/{submission_id}/{field}: {e}")
                outcomes.append(
                    ItemOutcome(
                        status=OutcomeStatus.ERROR,
                        op=SyncOp.CLEANUP_ORPHAN,
                        path=str(path) if path else None,
                        detail=f"{type(e).__name__}: {e}",
                        submission_id=submission_id,
                        field=field,
                    )
                )
                continue

            self.store.remove(submission_dir / name)
            outcomes.append(
                ItemOutcome(
                    status=OutcomeStatus.OK,
                    op=SyncOp.CLEANUP_ORPHAN,
                    path=str(path),
                    detail=detail,
                    submission_id=submission_id,
                    field=field,
                )
            )

        # A directory keeping a manifest we refused to act on stays in place
        if not any(o.status == OutcomeStatus.ERROR for o in outcomes):
            self.store.remove(submission_dir)
        return outcomes

    def clean(self, asset: Asset, current_ids: Iterable[int]) -> List[ItemOutcome]:
        orphans = self.orphan_ids(asset, current_ids)
        if not orphans:
            return []

        logger.info(f"[CLEANUP] Asset {asset.uid}: {len(orphans)} orphaned submission(s): {orphans}")
        outcomes: List[ItemOutcome] = []
        for submission_id in orphans:
            outcomes.extend(self._clean_submission(asset, submission_id))
        return outcomes
