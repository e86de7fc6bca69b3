from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Optional

from core.utils import safe_filename
from models.asset import Asset
from models.submission import Attachment


class Action(str, Enum):
    KEEP = "keep"
    DELETE = "delete"
    NONE = "none"  # value present but no attachment resolves


class ActionMapEntry(BaseModel):
    submission_id: int
    field: str
    submission_field_key: Optional[str] = None
    desired_value: Optional[str] = None
    attachment: Optional[Attachment] = None
    action: Action

    @property
    def image_name(self) -> Optional[str]:
        """Local file name: <submissionId>_<desiredValue>."""
        if not self.desired_value:
            return None
        return safe_filename(f"{self.submission_id}_{self.desired_value}")


class SubmissionActions(BaseModel):
    submission_id: int
    entries: List[ActionMapEntry] = Field(default_factory=list)  # field declaration order


class AssetActionMap(BaseModel):
    asset: Asset
    submissions: List[SubmissionActions] = Field(default_factory=list)
    filtered: bool = False
    warnings: List[str] = Field(default_factory=list)

    @property
    def submission_ids(self) -> List[int]:
        return [s.submission_id for s in self.submissions]
