from typing import Any, Dict, List, Optional

from core.exceptions import StructuralDataException
from core.interfaces import IJsonFetcher, IRecordProjection
from core.logger import get_logger
from models.outcome import FetchStatus, PageReport, PageResult

logger = get_logger(__name__)


class Paginator:
    """
    Drives a RetryingFetcher across a cursor-based listing endpoint.
    Pages look like {"results": [...], "next": url | null, "count": int}.
    """

    def __init__(self, fetcher: IJsonFetcher):
        self.fetcher = fetcher

    @staticmethod
    def _parse_page(payload: Any, url: str) -> Dict[str, Any]:
        if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
            raise StructuralDataException("Listing page has no 'results' array", {"url": url})
        next_url = payload.get("next")
        if next_url is not None and not isinstance(next_url, str):
            raise StructuralDataException("Listing page has an invalid 'next' link", {"url": url, "next": next_url})
        count = payload.get("count", 0)
        if not isinstance(count, int) or isinstance(count, bool):
            raise StructuralDataException("Listing page has an invalid 'count'", {"url": url, "count": count})
        return {"records": payload["results"], "next": next_url or None, "count": count}

    async def list_all(
        self,
        start_url: str,
        projection: Optional[IRecordProjection] = None,
        first_page: Optional[Dict[str, Any]] = None,
    ) -> PageResult:
        """
        Follows `next` links until exhausted. `first_page` is an already
        fetched payload for `start_url`.

        A page that exhausts its retries ends the walk: the records gathered
        so far are returned with status=failed. Projection and structural
        errors propagate to the caller.
        """
        records: List[Dict[str, Any]] = []
        report = PageReport()
        visited = set()
        url: Optional[str] = start_url

        while url:
            if url in visited:
                raise StructuralDataException("Listing pagination loops back on itself", {"url": url})
            visited.add(url)

            if first_page is not None:
                payload, first_page = first_page, None
            else:
                result = await self.fetcher.fetch_json(url)
                report.attempts += result.attempts
                if not result.ok:
                    report.failed_endpoint = url
                    report.detail = str(result.error)
                    logger.error(
                        f"[PAGINATOR] Page {report.pages + 1} failed, returning partial result "
                        f"({report.projected}/{report.advertised})"
                    )
                    return PageResult(records=records, status=FetchStatus.FAILED, report=report)
                payload = result.value

            page = self._parse_page(payload, url)
            report.pages += 1
            report.advertised = page["count"]
            report.fetched += len(page["records"])

            page_records = projection(page["records"]) if projection else page["records"]
            records.extend(page_records)
            report.projected = len(records)

            logger.info(
                f"[PAGINATOR] Page {report.pages}: {len(page_records)} record(s) kept "
                f"(fetched {report.fetched}/{report.advertised})"
            )
            url = page["next"]

        return PageResult(records=records, status=FetchStatus.OK, report=report)
