from pydantic import BaseModel, ConfigDict, Field
from typing import List

from core import constants


class ImageField(BaseModel):
    autoname: str = Field(..., min_length=1, description="Stable short name of the field")
    label: str = ""


class Asset(BaseModel):
    """Survey definition snapshot. Read-only for the whole run."""

    model_config = ConfigDict(populate_by_name=True)

    uid: str = Field(..., min_length=1)
    name: str = constants.DEFAULT_ASSET_NAME
    submission_count: int = Field(0, alias="deployment__submission_count")
    image_fields: List[ImageField] = Field(default_factory=list)

    @property
    def autonames(self) -> List[str]:
        return [f.autoname for f in self.image_fields]
