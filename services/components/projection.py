"""
In-process record projections used by the listing and submission stages.

Each helper either returns a `project(records) -> records` callable that the
Paginator applies page by page, or projects a payload directly.
"""
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core import constants
from core.exceptions import StructuralDataException
from core.interfaces import IRecordProjection
from core.logger import get_logger
from models.asset import ImageField

logger = get_logger(__name__)

Records = List[Dict[str, Any]]
Projection = IRecordProjection

IMAGES_MAP_KEY = "@images_map"


def compose(*projections: Optional[Projection]) -> Projection:
    """Chains projections left to right, ignoring None entries."""
    steps = [p for p in projections if p is not None]

    def _project(records: Records) -> Records:
        for step in steps:
            records = step(records)
        return records

    return _project


def select_assets(uids: Iterable[str]) -> Projection:
    """Keeps listing records whose uid is selected. Empty selection keeps all."""
    selected = set(uids)

    def _project(records: Records) -> Records:
        if not selected:
            return list(records)
        return [r for r in records if r.get("uid") in selected]

    return _project


def pick_keys(keys: Sequence[str]) -> Projection:
    def _project(records: Records) -> Records:
        return [{k: r[k] for k in keys if k in r} for r in records]

    return _project


def extract_image_fields(asset_payload: Dict[str, Any]) -> List[ImageField]:
    """
    Returns the image questions of an asset definition in declaration order.
    The stable name is `$autoname`, falling back to `name`.
    """
    content = asset_payload.get("content") if isinstance(asset_payload, dict) else None
    if content is None:
        return []
    if not isinstance(content, dict):
        raise StructuralDataException("Asset content is not an object", {"uid": asset_payload.get("uid")})
    survey = content.get("survey") or []
    if not isinstance(survey, list):
        raise StructuralDataException("Asset survey is not a list", {"uid": asset_payload.get("uid")})

    fields: List[ImageField] = []
    seen = set()
    for row in survey:
        if not isinstance(row, dict) or row.get("type") != constants.IMAGE_FIELD_TYPE:
            continue
        autoname = row.get("$autoname") or row.get("name")
        if not autoname:
            logger.warning(f"[PROJECTION] Image row without a name skipped: {row.get('$kuid')}")
            continue
        if autoname in seen:
            raise StructuralDataException(
                "Duplicate image field autoname",
                {"uid": asset_payload.get("uid"), "field": autoname},
            )
        seen.add(autoname)
        label = row.get("label")
        if isinstance(label, list):
            label = next((item for item in label if item), "")
        fields.append(ImageField(autoname=autoname, label=label or ""))
    return fields


def matches_field(key: str, autoname: str) -> bool:
    """Submission keys carry group paths, e.g. "group_a/photo" for field "photo"."""
    return key == autoname or key.endswith(f"/{autoname}")


def build_images_map(record: Dict[str, Any], autonames: Sequence[str]) -> Dict[str, List[Dict[str, Any]]]:
    return {
        name: [{"key": key, "value": value} for key, value in record.items() if matches_field(key, name)]
        for name in autonames
    }


def project_submissions(
    records: Records,
    image_fields: Sequence[ImageField],
    submission_ids: Sequence[int] = (),
) -> Records:
    """
    Filters submissions by id (when ids are given), keeps the bookkeeping
    keys plus every key belonging to an image field, and annotates each
    record with its images-map.
    """
    wanted = set(submission_ids)
    autonames = [f.autoname for f in image_fields]
    projected: Records = []

    for record in records:
        if not isinstance(record, dict):
            raise StructuralDataException("Submission record is not an object", {"record": repr(record)[:200]})
        if wanted and record.get("_id") not in wanted:
            continue

        kept = {k: record[k] for k in constants.SUBMISSION_REQUIRED_KEYS if k in record}
        for key, value in record.items():
            if any(matches_field(key, name) for name in autonames):
                kept[key] = value
        kept[IMAGES_MAP_KEY] = build_images_map(record, autonames)
        projected.append(kept)

    return projected
