from pydantic import BaseModel, ConfigDict, Field, StrictInt
from typing import Any, Dict, List, Optional

from models.asset import Asset


class Attachment(BaseModel):
    """Validated attachment record. Raw records failing validation are skipped."""

    id: StrictInt
    mimetype: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    download_url: str = Field(..., min_length=1)
    instance: StrictInt


class ImageFieldValue(BaseModel):
    """One submission key matching an image field, e.g. {"group/photo": "cat.jpg"}."""

    key: str
    value: Optional[Any] = None


class Submission(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: StrictInt = Field(..., alias="_id")
    uuid: Optional[str] = Field(None, alias="_uuid")
    # Raw records, validated lazily by the AttachmentResolver
    attachments: List[Dict[str, Any]] = Field(default_factory=list, alias="_attachments")
    # image field autoname -> matching submission entries (zero or one expected)
    images_map: Dict[str, List[ImageFieldValue]] = Field(default_factory=dict, alias="@images_map")


class AssetSubmissions(BaseModel):
    asset: Asset
    submissions: List[Submission] = Field(default_factory=list)
    # True when a submission-id filter restricted the fetch
    filtered: bool = False
