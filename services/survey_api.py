from typing import Any, Dict, List, Sequence

from pydantic import ValidationError

from core import constants
from core.config import RunConfig
from core.exceptions import StructuralDataException
from core.logger import get_logger
from core.utils import format_validation_errors
from models.asset import Asset, ImageField
from models.outcome import FetchStatus, PageReport, PageResult
from models.submission import Submission
from services.components.projection import (
    compose,
    extract_image_fields,
    pick_keys,
    project_submissions,
    select_assets,
)
from services.network.fetcher import FetchResult, RetryingFetcher
from services.network.paginator import Paginator

logger = get_logger(__name__)


class SurveyApiClient:
    """
    Endpoint-level access to the survey platform used by stages 1-3.
    Network failures come back as results; structural problems raise.
    """

    def __init__(self, fetcher: RetryingFetcher, config: RunConfig):
        self.fetcher = fetcher
        self.config = config
        self.paginator = Paginator(fetcher)

    def assets_url(self) -> str:
        return self.fetcher.api_url(f"{constants.ASSETS_ENDPOINT}?format=json&limit={self.config.page_size}&offset=0")

    def asset_url(self, uid: str) -> str:
        return self.fetcher.api_url(f"{constants.ASSETS_ENDPOINT}{uid}/?format=json")

    def submissions_url(self, uid: str) -> str:
        return self.fetcher.api_url(f"{constants.ASSETS_ENDPOINT}{uid}/submissions/?format=json")

    async def list_assets(self) -> PageResult:
        """Lists every asset, narrowed to the configured asset uids when any are set."""
        selected = self.config.asset_uids()
        projection = compose(select_assets(selected), pick_keys(constants.ASSET_REQUIRED_KEYS))
        result = await self.paginator.list_all(self.assets_url(), projection)

        if result.ok and selected:
            found = {r.get("uid") for r in result.records}
            for uid in selected:
                if uid not in found:
                    logger.warning(f"[API] Configured asset {uid} not found on the server")
        return result

    @staticmethod
    def parse_assets(records: List[Dict[str, Any]]) -> List[Asset]:
        assets = []
        for record in records:
            try:
                assets.append(Asset.model_validate(record))
            except ValidationError as e:
                raise StructuralDataException(
                    "Invalid asset record in listing",
                    {"uid": record.get("uid"), "errors": format_validation_errors(e)},
                )
        return assets

    async def get_asset_image_fields(self, uid: str) -> FetchResult:
        """Value is the ordered list of the asset's image fields."""
        result = await self.fetcher.fetch_json(self.asset_url(uid))
        if not result.ok:
            return result
        if not isinstance(result.value, dict):
            raise StructuralDataException("Asset payload is not an object", {"uid": uid})

        fields: List[ImageField] = extract_image_fields(result.value)
        logger.info(f"[API] Asset {uid}: {len(fields)} image field(s)")
        return FetchResult(result.endpoint, value=fields, attempts=result.attempts)

    async def get_submissions(
        self,
        uid: str,
        image_fields: Sequence[ImageField],
        submission_ids: Sequence[int] = (),
    ) -> PageResult:
        """
        Fetches and projects the submissions of one asset. The endpoint
        answers either with a plain array or with a paginated object.
        """
        url = self.submissions_url(uid)

        def projection(records):
            return project_submissions(records, image_fields, submission_ids)

        first = await self.fetcher.fetch_json(url)
        if not first.ok:
            report = PageReport(attempts=first.attempts, failed_endpoint=url, detail=str(first.error))
            return PageResult(status=FetchStatus.FAILED, report=report)

        if isinstance(first.value, list):
            records = projection(first.value)
            report = PageReport(
                advertised=len(first.value),
                fetched=len(first.value),
                projected=len(records),
                pages=1,
                attempts=first.attempts,
            )
            result = PageResult(records=records, report=report)
        elif isinstance(first.value, dict):
            result = await self.paginator.list_all(url, projection, first_page=first.value)
            result.report.attempts += first.attempts
        else:
            raise StructuralDataException("Submissions payload is neither an array nor a page", {"uid": uid})

        if submission_ids:
            found = {r.get("_id") for r in result.records}
            missing = [sid for sid in submission_ids if sid not in found]
            if missing and result.ok:
                logger.warning(f"[API] Asset {uid}: submission id(s) not found: {missing}")
        logger.info(f"[API] Asset {uid}: {len(result.records)} submission(s) kept of {result.report.fetched}")
        return result

    @staticmethod
    def parse_submissions(uid: str, records: List[Dict[str, Any]]) -> List[Submission]:
        submissions = []
        for record in records:
            try:
                submissions.append(Submission.model_validate(record))
            except ValidationError as e:
                raise StructuralDataException(
                    "Invalid submission record",
                    {"uid": uid, "submission": record.get("_id"), "errors": format_validation_errors(e)},
                )
        return submissions
