from pathlib import Path
from typing import Optional, Sequence, Union

from core.exceptions import IntegrityException
from core.logger import get_logger
from core.utils import safe_filename
from models.asset import Asset
from repositories.content_store import ContentStore

logger = get_logger(__name__)


class ImageRepository:
    """
    Local image files under <images_root>/<assetUid>/<assetName>/<imageName>.

    Retired images go to the run's quarantine directory (same relative
    layout) unless hard deletion was requested.
    """

    def __init__(
        self,
        images_root: Path,
        deleted_root: Optional[Path] = None,
        hard_delete: bool = False,
        store: Optional[ContentStore] = None,
    ):
        self.store = store or ContentStore()
        self.images_root = self.store.resolve(images_root)
        self.deleted_root = self.store.resolve(deleted_root) if deleted_root else None
        self.hard_delete = hard_delete or deleted_root is None

    def asset_dir(self, asset: Asset) -> Path:
        return self.images_root / asset.uid / safe_filename(asset.name)

    def path_for(self, asset: Asset, image_name: str) -> Path:
        return self.asset_dir(asset) / image_name

    def quarantine_path(self, asset: Asset, image_name: str) -> Path:
        return self.deleted_root / asset.uid / safe_filename(asset.name) / image_name

    def retire(self, asset: Asset, image_name: str, expected: Union[bytes, Sequence[int]]) -> str:
        """
        Quarantines (or deletes) an image after proving it is the file the
        manifest describes. Returns a detail line.

        Raises:
            IntegrityException: the file's hash differs from `expected`
        """
        path = self.path_for(asset, image_name)
        if not self.store.verify_hash(path, expected):
            raise IntegrityException(
                "Local image does not match its manifest hash, refusing to delete",
                {"asset": asset.uid, "path": str(path)},
            )

        if self.hard_delete:
            self.store.remove(path)
            logger.info(f"[IMAGES] Deleted {path}")
            return "deleted"

        target = self.store.move(path, self.quarantine_path(asset, image_name))
        logger.info(f"[IMAGES] Moved {path} -> {target}")
        return f"moved to {target}"
