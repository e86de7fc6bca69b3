import json
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from core.exceptions import StructuralDataException
from core.logger import get_logger
from models.manifest import AttachmentManifest
from repositories.content_store import ContentStore, PathKind

logger = get_logger(__name__)


class ManifestRepository:
    """
    Attachment manifests stored as
    <root>/<assetUid>/<submissionId>/<fieldAutoname>.json
    """

    def __init__(self, root: Path, store: Optional[ContentStore] = None):
        self.store = store or ContentStore()
        self.root = self.store.resolve(root)

    def asset_dir(self, asset_uid: str) -> Path:
        return self.root / asset_uid

    def submission_dir(self, asset_uid: str, submission_id: int) -> Path:
        return self.asset_dir(asset_uid) / str(submission_id)

    def path_for(self, asset_uid: str, submission_id: int, field: str) -> Path:
        return self.submission_dir(asset_uid, submission_id) / f"{field}.json"

    def load(self, asset_uid: str, submission_id: int, field: str) -> Optional[AttachmentManifest]:
        """Returns None when no manifest exists; raises on an unreadable one."""
        path = self.path_for(asset_uid, submission_id, field)
        if self.store.exists(path) != PathKind.FILE:
            return None
        return self.load_path(path)

    def load_path(self, path: Path) -> AttachmentManifest:
        try:
            return AttachmentManifest.model_validate(self.store.read_json(path))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StructuralDataException(
                "Unreadable attachment manifest",
                {"path": str(path), "error": str(e).splitlines()[0]},
            )

    def save(self, asset_uid: str, submission_id: int, field: str, manifest: AttachmentManifest) -> Path:
        path = self.path_for(asset_uid, submission_id, field)
        self.store.write_json(path, manifest.to_json_dict())
        logger.debug(f"[MANIFEST] Saved {path}")
        return path

    def remove(self, asset_uid: str, submission_id: int, field: str) -> bool:
        removed = self.store.remove(self.path_for(asset_uid, submission_id, field))
        submission_dir = self.submission_dir(asset_uid, submission_id)
        if not self.store.list_dir(submission_dir):
            self.store.remove(submission_dir)
        return removed
