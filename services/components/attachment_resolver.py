from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from core import constants
from core.logger import get_logger
from models.submission import Attachment

logger = get_logger(__name__)


class AttachmentResolver:
    """
    Finds the attachment backing an image field value.

    Only image attachments whose filename ends with the desired value are
    candidates; the numerically greatest id wins.
    """

    def __init__(self):
        self.excluded = 0

    def validate(self, raw: Dict[str, Any], submission_id: int) -> Optional[Attachment]:
        try:
            return Attachment.model_validate(raw)
        except ValidationError as e:
            self.excluded += 1
            missing = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            logger.warning(
                f"[RESOLVER] Submission {submission_id}: malformed attachment "
                f"{raw.get('id') if isinstance(raw, dict) else raw!r} excluded (fields: {', '.join(missing)})"
            )
            return None

    def candidates(self, attachments: Sequence[Dict[str, Any]], submission_id: int) -> List[Attachment]:
        valid = []
        for raw in attachments:
            attachment = self.validate(raw, submission_id)
            if attachment and attachment.mimetype.startswith(constants.IMAGE_MIMETYPE_PREFIX):
                valid.append(attachment)
        return valid

    def resolve(
        self,
        desired_name: str,
        attachments: Sequence[Dict[str, Any]],
        submission_id: int,
    ) -> Optional[Attachment]:
        if not desired_name:
            return None
        matches = [a for a in self.candidates(attachments, submission_id) if a.filename.endswith(desired_name)]
        if not matches:
            return None
        return max(matches, key=lambda a: a.id)
