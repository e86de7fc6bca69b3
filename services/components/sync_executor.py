"""
Stage 5: reconcile the action map with local storage.

Per (submission, field) item the executor reads the manifest and ends in one
of UP_TO_DATE, DOWNLOAD, DELETE or SKIP_INCONSISTENT. Destructive steps are
preceded by a hash check against the manifest. One failing item never stops
its siblings; failures become error outcomes.
"""
from typing import Dict, List, Optional

from core import constants
from core.exceptions import DuplicateTargetException, StructuralDataException, SyncException
from core.logger import get_logger
from core.utils import get_now
from models.action import Action, ActionMapEntry, AssetActionMap, SubmissionActions
from models.asset import Asset
from models.manifest import AttachmentManifest
from models.outcome import AssetSyncReport, ItemOutcome, OutcomeStatus, SyncOp
from repositories.content_store import ContentStore
from repositories.image_repo import ImageRepository
from repositories.manifest_repo import ManifestRepository
from services.components.image_downloader import ImageDownloader

logger = get_logger(__name__)


class SyncExecutor:
    def __init__(
        self,
        manifests: ManifestRepository,
        images: ImageRepository,
        downloader: ImageDownloader,
        store: Optional[ContentStore] = None,
    ):
        self.manifests = manifests
        self.images = images
        self.downloader = downloader
        self.store = store or ContentStore()

    # =========================================================================
    # Outcome bookkeeping
    # =========================================================================

    @staticmethod
    def _ok(op: SyncOp, entry: ActionMapEntry, detail: str, path=None) -> ItemOutcome:
        return ItemOutcome(
            status=OutcomeStatus.OK,
            op=op,
            path=str(path) if path else None,
            detail=detail,
            submission_id=entry.submission_id,
            field=entry.field,
        )

    @staticmethod
    def _error(op: SyncOp, entry: ActionMapEntry, error: Exception, path=None) -> ItemOutcome:
        return ItemOutcome(
            status=OutcomeStatus.ERROR,
            op=op,
            path=str(path) if path else None,
            detail=f"{type(error).__name__}: {error}",
            submission_id=entry.submission_id,
            field=entry.field,
        )

    @staticmethod
    def _count(report: AssetSyncReport, outcome: ItemOutcome, counter: str) -> None:
        report.outcomes.append(outcome)
        name = "errors" if outcome.status == OutcomeStatus.ERROR else counter
        setattr(report.counters, name, getattr(report.counters, name) + 1)

    # =========================================================================
    # Per-item transitions
    # =========================================================================

    def _load_manifest(self, asset: Asset, entry: ActionMapEntry) -> Optional[AttachmentManifest]:
        try:
            return self.manifests.load(asset.uid, entry.submission_id, entry.field)
        except StructuralDataException as e:
            logger.warning(f"[SYNC] {e}; treating manifest as absent")
            return None

    def _is_consistent(self, asset: Asset, entry: ActionMapEntry, manifest: Optional[AttachmentManifest]) -> bool:
        if manifest is None:
            return False
        if manifest.image_name != entry.image_name or manifest.attachment_id != entry.attachment.id:
            return False
        return self.store.verify_hash(self.images.path_for(asset, manifest.image_name), manifest.digest)

    @staticmethod
    def _download_reason(entry: ActionMapEntry, manifest: Optional[AttachmentManifest]) -> str:
        if manifest is None:
            return "new image"
        if manifest.image_name != entry.image_name:
            return f"renamed from {manifest.image_name}"
        if manifest.attachment_id != entry.attachment.id:
            return f"attachment changed {manifest.attachment_id} -> {entry.attachment.id}"
        return "local file missing or altered"

    async def _keep(
        self,
        report: AssetSyncReport,
        asset: Asset,
        entry: ActionMapEntry,
        claimed: Dict[str, str],
    ) -> None:
        target = self.images.path_for(asset, entry.image_name)
        manifest = self._load_manifest(asset, entry)

        if self._is_consistent(asset, entry, manifest):
            self._count(report, self._ok(SyncOp.UP_TO_DATE, entry, "up to date", target), "up_to_date")
            return

        reason = self._download_reason(entry, manifest)
        result = await self.downloader.download(entry.attachment, target)
        self.manifests.save(
            asset.uid,
            entry.submission_id,
            entry.field,
            AttachmentManifest(
                image_name=entry.image_name,
                original_name=entry.attachment.filename,
                attachment_id=entry.attachment.id,
                download_timestamp=get_now().isoformat(),
                hash=list(result.digest),
            ),
        )
        self._count(
            report,
            self._ok(SyncOp.DOWNLOAD, entry, f"{reason} ({result.size} bytes)", target),
            "downloaded",
        )

        if manifest is not None and manifest.image_name != entry.image_name:
            self._retire_superseded(report, asset, entry, manifest, claimed)

    def _retire_superseded(
        self,
        report: AssetSyncReport,
        asset: Asset,
        entry: ActionMapEntry,
        previous: AttachmentManifest,
        claimed: Dict[str, str],
    ) -> None:
        old_path = self.images.path_for(asset, previous.image_name)
        if previous.image_name in claimed or not self.store.is_file(old_path):
            return
        try:
            detail = self.images.retire(asset, previous.image_name, previous.digest)
        except (SyncException, OSError) as e:
            logger.error(f"[SYNC] Could not retire superseded {old_path}: {e}")
            self._count(report, self._error(SyncOp.RETIRE_SUPERSEDED, entry, e, old_path), "errors")
            return
        self._count(report, self._ok(SyncOp.RETIRE_SUPERSEDED, entry, detail, old_path), "deleted")

    def _delete(self, report: AssetSyncReport, asset: Asset, entry: ActionMapEntry, claimed: Dict[str, str]) -> None:
        manifest = self.manifests.load(asset.uid, entry.submission_id, entry.field)
        if manifest is None:
            self._count(
                report,
                self._ok(SyncOp.SKIP_INCONSISTENT, entry, "no value and no manifest, nothing to delete"),
                "skipped",
            )
            return

        path = self.images.path_for(asset, manifest.image_name)
        owner = claimed.get(manifest.image_name)
        if owner is not None:
            self.manifests.remove(asset.uid, entry.submission_id, entry.field)
            self._count(report, self._ok(SyncOp.DELETE, entry, f"file now kept by field '{owner}'", path), "skipped")
            return

        if not self.store.is_file(path):
            self.manifests.remove(asset.uid, entry.submission_id, entry.field)
            self._count(report, self._ok(SyncOp.DELETE, entry, "file already absent", path), "skipped")
            return

        detail = self.images.retire(asset, manifest.image_name, manifest.digest)
        self.manifests.remove(asset.uid, entry.submission_id, entry.field)
        self._count(report, self._ok(SyncOp.DELETE, entry, detail, path), "deleted")

    # =========================================================================
    # Submission / asset level
    # =========================================================================

    @staticmethod
    def find_duplicates(entries: List[ActionMapEntry]) -> Dict[str, str]:
        """
        Returns {field: first_field} for every keep entry whose image name was
        already claimed by an earlier field of the same submission.
        """
        owners: Dict[str, str] = {}
        duplicates: Dict[str, str] = {}
        for entry in entries:
            if entry.action != Action.KEEP:
                continue
            if entry.image_name in owners:
                duplicates[entry.field] = owners[entry.image_name]
            else:
                owners[entry.image_name] = entry.field
        return duplicates

    async def sync_submission(self, report: AssetSyncReport, asset: Asset, submission: SubmissionActions) -> None:
        duplicates = self.find_duplicates(submission.entries)
        claimed: Dict[str, str] = {
            e.image_name: e.field
            for e in submission.entries
            if e.action == Action.KEEP and e.field not in duplicates
        }

        for entry in submission.entries:
            if entry.field in duplicates:
                error = DuplicateTargetException(
                    "Image name already claimed by another field",
                    {"image": entry.image_name, "claimed_by": duplicates[entry.field]},
                )
                logger.error(f"[SYNC] Submission {entry.submission_id} field '{entry.field}': {error}")
                self._count(report, self._error(SyncOp.DOWNLOAD, entry, error), "errors")
                continue

            if entry.action == Action.NONE:
                self._count(
                    report,
                    self._ok(SyncOp.UNRESOLVED, entry, f"no attachment matches '{entry.desired_value}'"),
                    "warnings",
                )
                continue

            op = SyncOp.DOWNLOAD if entry.action == Action.KEEP else SyncOp.DELETE
            try:
                if entry.action == Action.KEEP:
                    await self._keep(report, asset, entry, claimed)
                else:
                    self._delete(report, asset, entry, claimed)
            except (SyncException, OSError) as e:
                logger.error(f"[SYNC] Submission {entry.submission_id} field '{entry.field}' failed: {e}")
                self._count(report, self._error(op, entry, e), "errors")

    async def sync_asset(self, action_map: AssetActionMap) -> AssetSyncReport:
        asset = action_map.asset
        report = AssetSyncReport(asset_uid=asset.uid, asset_name=asset.name)
        self.store.ensure_dir(self.images.asset_dir(asset))

        total = len(action_map.submissions)
        step = max(1, total * constants.PROGRESS_LOG_STEP // 100)
        logger.info(f"[SYNC] Asset {asset.uid} ({asset.name}): {total} submission(s)")

        for index, submission in enumerate(action_map.submissions, start=1):
            await self.sync_submission(report, asset, submission)
            if index % step == 0 or index == total:
                logger.info(f"[SYNC] Asset {asset.uid}: {index}/{total} submissions processed")

        logger.info(f"[SYNC] Asset {asset.uid} done: {report.counters.summary()}")
        return report
