from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List

from core import constants


class AttachmentManifest(BaseModel):
    """
    Provenance record of one downloaded image.
    Persisted as {imageName, originalName, attachmentId, downloadTimestamp, hash}.
    """

    model_config = ConfigDict(populate_by_name=True)

    image_name: str = Field(..., alias="imageName")
    original_name: str = Field(..., alias="originalName")
    attachment_id: int = Field(..., alias="attachmentId")
    download_timestamp: str = Field(..., alias="downloadTimestamp")
    hash: List[int] = Field(..., description="SHA-256 digest as a list of byte values")

    @field_validator("hash")
    @classmethod
    def validate_hash(cls, v: List[int]) -> List[int]:
        if len(v) != constants.HASH_DIGEST_SIZE or any(not 0 <= b <= 255 for b in v):
            raise ValueError(f"hash must hold {constants.HASH_DIGEST_SIZE} byte values")
        return v

    @property
    def digest(self) -> bytes:
        return bytes(self.hash)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)
