from typing import List, Optional, Sequence

from core.exceptions import StructuralDataException
from models.action import Action, ActionMapEntry, AssetActionMap, SubmissionActions
from models.asset import Asset, ImageField
from models.submission import Submission
from services.components.attachment_resolver import AttachmentResolver


class ActionMapBuilder:
    """
    Decides keep / delete / none for every submission x image field.
    Deterministic for a given submission list and field set; no I/O.
    """

    def __init__(self, resolver: Optional[AttachmentResolver] = None):
        self.resolver = resolver or AttachmentResolver()

    @staticmethod
    def _desired_value(value) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def build_entry(self, asset: Asset, submission: Submission, field: ImageField) -> ActionMapEntry:
        values = submission.images_map.get(field.autoname, [])
        if len(values) > 1:
            raise StructuralDataException(
                "Image field maps to more than one submission value",
                {
                    "asset": asset.uid,
                    "submission": submission.id,
                    "field": field.autoname,
                    "keys": [v.key for v in values],
                },
            )

        key = values[0].key if values else None
        desired = self._desired_value(values[0].value) if values else None
        if desired is None:
            return ActionMapEntry(
                submission_id=submission.id,
                field=field.autoname,
                submission_field_key=key,
                action=Action.DELETE,
            )

        attachment = self.resolver.resolve(desired, submission.attachments, submission.id)
        return ActionMapEntry(
            submission_id=submission.id,
            field=field.autoname,
            submission_field_key=key,
            desired_value=desired,
            attachment=attachment,
            action=Action.KEEP if attachment else Action.NONE,
        )

    def build(self, asset: Asset, submissions: Sequence[Submission], filtered: bool = False) -> AssetActionMap:
        result: List[SubmissionActions] = []
        warnings: List[str] = []

        for submission in submissions:
            entries = [self.build_entry(asset, submission, field) for field in asset.image_fields]
            for entry in entries:
                if entry.action == Action.NONE:
                    warnings.append(
                        f"submission {entry.submission_id} field '{entry.field}': "
                        f"no image attachment matches '{entry.desired_value}'"
                    )
            result.append(SubmissionActions(submission_id=submission.id, entries=entries))

        return AssetActionMap(asset=asset, submissions=result, filtered=filtered, warnings=warnings)
