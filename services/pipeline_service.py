from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import aiohttp

from core import constants
from core.config import RunConfig
from core.exceptions import StageException, StructuralDataException, SyncException
from core.logger import get_logger
from core.performance import PerformanceMonitor
from core.utils import get_run_timestamp
from models.action import AssetActionMap
from models.asset import Asset
from models.outcome import (
    AssetSyncReport,
    OutcomeStatus,
    RunResult,
    RunStatus,
    StageRecord,
    SyncCounters,
)
from models.submission import AssetSubmissions
from repositories.content_store import ContentStore
from repositories.image_repo import ImageRepository
from repositories.manifest_repo import ManifestRepository
from services.components.action_map_builder import ActionMapBuilder
from services.components.image_downloader import ImageDownloader
from services.components.orphan_cleaner import OrphanCleaner
from services.components.sync_executor import SyncExecutor
from services.network.fetcher import RetryingFetcher
from services.survey_api import SurveyApiClient

logger = get_logger(__name__)


class RunLayout:
    """
    Output tree of a run:

        <output>/.attachments_map/        manifests
        <output>/images/                  mirrored images
        <output>/runs/run_<ts>/logs/      run log
        <output>/runs/run_<ts>/steps/     stage snapshots
        <output>/runs/run_<ts>/images_deleted/
    """

    def __init__(self, output_dir: Path, store: Optional[ContentStore] = None, timestamp: Optional[str] = None):
        self.store = store or ContentStore()
        self.output_dir = self.store.resolve(output_dir)
        self.manifests_dir = self.output_dir / constants.MANIFESTS_DIR_NAME
        self.images_dir = self.output_dir / constants.IMAGES_DIR_NAME
        self.runs_dir = self.output_dir / constants.RUNS_DIR_NAME
        self.timestamp = timestamp or get_run_timestamp()
        self.run_dir: Optional[Path] = None

    @property
    def logs_dir(self) -> Path:
        return self.run_dir / constants.RUN_LOGS_DIR_NAME

    @property
    def steps_dir(self) -> Path:
        return self.run_dir / constants.RUN_STEPS_DIR_NAME

    @property
    def deleted_dir(self) -> Path:
        return self.run_dir / constants.RUN_DELETED_DIR_NAME

    @property
    def log_file(self) -> Path:
        return self.logs_dir / constants.DEFAULT_LOG_FILE

    def create(self) -> "RunLayout":
        """Creates the tree. A second run within the same second gets a suffixed directory."""
        for path in (self.manifests_dir, self.images_dir, self.runs_dir):
            self.store.ensure_dir(path)

        base_name = f"{constants.RUN_DIR_PREFIX}{self.timestamp}"
        for i in range(constants.MAX_RUN_DIR_TRIES):
            candidate = self.runs_dir / (base_name if i == 0 else f"{base_name}_{i}")
            try:
                candidate.mkdir()
            except FileExistsError:
                continue
            self.run_dir = candidate
            break
        else:
            raise OSError(f"Could not create a unique run directory under {self.runs_dir}")

        for path in (self.logs_dir, self.steps_dir, self.deleted_dir):
            self.store.ensure_dir(path)
        return self

    def snapshot(self, record: StageRecord, data: List[Any]) -> Path:
        path = self.steps_dir / f"step{record.stage}.json"
        payload = {
            "stage": record.stage,
            "name": record.name,
            "count": record.count,
            "failures": record.failures,
            "records": [item.model_dump(mode="json", by_alias=True) for item in data],
        }
        return self.store.write_json(path, payload)


class PipelineOrchestrator:
    """
    Runs the five stages strictly in order. Each stage's result is written
    to steps/stepN.json before the next one starts. An empty result stops
    the run cleanly; a stage exception fails it.
    """

    STAGES = {
        1: "list assets",
        2: "discover image fields",
        3: "fetch submissions",
        4: "build action map",
        5: "synchronize images",
    }

    def __init__(
        self,
        config: RunConfig,
        session: aiohttp.ClientSession,
        layout: Optional[RunLayout] = None,
        store: Optional[ContentStore] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.config = config
        self.store = store or ContentStore()
        self.layout = layout or RunLayout(config.output_dir, self.store)
        self.monitor = monitor or PerformanceMonitor()

        self.fetcher = RetryingFetcher(session, config)
        self.api = SurveyApiClient(self.fetcher, config)
        self.builder = ActionMapBuilder()

        # Repositories and executor need the run directory, see _prepare()
        self.manifests: Optional[ManifestRepository] = None
        self.images: Optional[ImageRepository] = None
        self.executor: Optional[SyncExecutor] = None
        self.cleaner: Optional[OrphanCleaner] = None

    def _prepare(self) -> None:
        if self.layout.run_dir is None:
            self.layout.create()
        self.manifests = ManifestRepository(self.layout.manifests_dir, self.store)
        self.images = ImageRepository(
            self.layout.images_dir,
            self.layout.deleted_dir,
            hard_delete=self.config.delete_images,
            store=self.store,
        )
        downloader = ImageDownloader(self.fetcher, self.config, self.store)
        self.executor = SyncExecutor(self.manifests, self.images, downloader, self.store)
        self.cleaner = OrphanCleaner(self.manifests, self.images, self.store)

    # =========================================================================
    # Stages
    # =========================================================================

    async def stage1_list_assets(self, _, record: StageRecord) -> Tuple[List[Asset], int]:
        page = await self.api.list_assets()
        if not page.ok:
            raise StageException(
                1,
                "Asset listing failed",
                {
                    "endpoint": page.report.failed_endpoint,
                    "fetched": page.report.fetched,
                    "advertised": page.report.advertised,
                    "attempts": page.report.attempts,
                },
            )
        assets = self.api.parse_assets(page.records)
        logger.info(f"[PIPELINE] {len(assets)} asset(s) selected of {page.report.advertised} on the server")
        return assets, len(assets)

    def _check_all_failed(self, stage: int, record: StageRecord, total: int) -> None:
        if total and len(record.failures) == total:
            first = record.failures[0]
            raise StageException(
                stage,
                f"Every asset failed in stage {stage}",
                {"failed": total, "endpoint": first.get("endpoint")},
            )

    def _needs_cleanup(self, asset: Asset) -> bool:
        """True when orphan cleanup may retire local data of an asset with no submissions left."""
        if not self.config.clean_orphans or self.config.submission_ids_for(asset.uid):
            return False
        return bool(self.cleaner.orphan_ids(asset, []))

    async def stage2_image_fields(self, assets: List[Asset], record: StageRecord) -> Tuple[List[Asset], int]:
        with_fields: List[Asset] = []
        deployed: List[Asset] = []
        for asset in assets:
            if asset.submission_count > 0 or self._needs_cleanup(asset):
                deployed.append(asset)
            else:
                logger.info(f"[PIPELINE] Asset {asset.uid} ({asset.name}) has no submissions, skipping")

        for asset in deployed:
            try:
                result = await self.api.get_asset_image_fields(asset.uid)
            except StructuralDataException as e:
                endpoint = self.api.asset_url(asset.uid)
                record.failures.append({"asset": asset.uid, "endpoint": endpoint, "error": str(e)})
                logger.error(f"[PIPELINE] Asset {asset.uid}: invalid asset content, skipping asset: {e}")
                continue
            if not result.ok:
                record.failures.append({"asset": asset.uid, "endpoint": result.endpoint, "error": str(result.error)})
                logger.error(f"[PIPELINE] Asset {asset.uid}: image field discovery failed, skipping asset")
                continue
            if not result.value:
                logger.info(f"[PIPELINE] Asset {asset.uid} ({asset.name}) has no image fields, skipping")
                continue
            with_fields.append(asset.model_copy(update={"image_fields": result.value}))

        self._check_all_failed(2, record, len(deployed))
        return with_fields, len(with_fields)

    async def stage3_submissions(self, assets: List[Asset], record: StageRecord) -> Tuple[List[AssetSubmissions], int]:
        fetched: List[AssetSubmissions] = []
        for asset in assets:
            submission_ids = self.config.submission_ids_for(asset.uid)
            endpoint = self.api.submissions_url(asset.uid)
            try:
                page = await self.api.get_submissions(asset.uid, asset.image_fields, submission_ids)
                if not page.ok:
                    record.failures.append(
                        {"asset": asset.uid, "endpoint": page.report.failed_endpoint, "error": page.report.detail}
                    )
                    logger.error(f"[PIPELINE] Asset {asset.uid}: submission fetch failed, skipping asset")
                    continue
                submissions = self.api.parse_submissions(asset.uid, page.records)
            except StructuralDataException as e:
                record.failures.append({"asset": asset.uid, "endpoint": endpoint, "error": str(e)})
                logger.error(f"[PIPELINE] Asset {asset.uid}: invalid submission data, skipping asset: {e}")
                continue
            fetched.append(AssetSubmissions(asset=asset, submissions=submissions, filtered=bool(submission_ids)))

        self._check_all_failed(3, record, len(assets))
        return fetched, sum(len(a.submissions) for a in fetched)

    async def stage4_action_maps(
        self, fetched: List[AssetSubmissions], record: StageRecord
    ) -> Tuple[List[AssetActionMap], int]:
        maps = [self.builder.build(a.asset, a.submissions, a.filtered) for a in fetched]
        for action_map in maps:
            for warning in action_map.warnings:
                logger.warning(f"[PIPELINE] Asset {action_map.asset.uid}: {warning}")
        return maps, sum(len(s.entries) for m in maps for s in m.submissions)

    async def _sync_one(self, action_map: AssetActionMap) -> AssetSyncReport:
        report = await self.executor.sync_asset(action_map)
        if self.config.clean_orphans and not action_map.filtered:
            report.cleanup_outcomes = self.cleaner.clean(action_map.asset, action_map.submission_ids)
            for outcome in report.cleanup_outcomes:
                if outcome.status == OutcomeStatus.ERROR:
                    report.counters.errors += 1
                else:
                    report.counters.deleted += 1
        return report

    async def stage5_sync(self, maps: List[AssetActionMap], record: StageRecord) -> Tuple[List[AssetSyncReport], int]:
        reports: List[AssetSyncReport] = []
        for action_map in maps:
            asset = action_map.asset
            try:
                report = await self._sync_one(action_map)
            except (SyncException, OSError) as e:
                # The asset is abandoned; later assets still run
                logger.error(f"[PIPELINE] Asset {asset.uid}: synchronization aborted: {e}")
                record.failures.append({"asset": asset.uid, "error": f"{type(e).__name__}: {e}"})
                report = AssetSyncReport(asset_uid=asset.uid, asset_name=asset.name)
                report.counters.errors += 1
                reports.append(report)
                continue
            for item in report.failed_items:
                record.failures.append({"asset": report.asset_uid, **item.model_dump(mode="json")})
            reports.append(report)
        return reports, sum(len(r.outcomes) + len(r.cleanup_outcomes) for r in reports)

    # =========================================================================
    # Run
    # =========================================================================

    def _handlers(self) -> List[Tuple[int, Callable]]:
        return [
            (1, self.stage1_list_assets),
            (2, self.stage2_image_fields),
            (3, self.stage3_submissions),
            (4, self.stage4_action_maps),
            (5, self.stage5_sync),
        ]

    async def run(self) -> RunResult:
        self._prepare()
        result = RunResult(status=RunStatus.DONE, stage_reached=0, run_dir=str(self.layout.run_dir))
        logger.info(f"[PIPELINE] Run started, output in {self.layout.run_dir}")

        data: Any = None
        for stage, handler in self._handlers():
            name = self.STAGES[stage]
            label = f"Stage {stage}: {name}"
            record = StageRecord(stage=stage, name=name)
            result.stage_reached = stage

            try:
                with self.monitor.measure(label):
                    data, record.count = await handler(data, record)
            except SyncException as e:
                record.duration_ms = self.monitor.last_duration_ms(label)
                result.stages.append(record)
                result.status = RunStatus.FAILED
                result.error = str(e)
                self._log_failure(record, e)
                break

            record.duration_ms = self.monitor.last_duration_ms(label)
            result.stages.append(record)
            self.layout.snapshot(record, data)

            if stage == 5:
                result.reports = data
                result.counters = self._total(data)
            elif self._is_empty(stage, record, data):
                result.status = RunStatus.STOPPED
                logger.info(f"[PIPELINE] {label} returned nothing, stopping")
                break

        self.monitor.log_summary()
        self._log_summary(result)
        return result

    def _is_empty(self, stage: int, record: StageRecord, data: List[Any]) -> bool:
        """
        An empty result stops the run. Assets fetched with zero submissions
        still go on to stage 5 when orphan cleanup may retire their local data.
        """
        if record.count > 0:
            return False
        if stage in (3, 4) and self.config.clean_orphans:
            return not any(not item.filtered for item in data)
        return True

    @staticmethod
    def _total(reports: List[AssetSyncReport]) -> SyncCounters:
        total = SyncCounters()
        for report in reports:
            total = total.add(report.counters)
        return total

    def _log_failure(self, record: StageRecord, error: SyncException) -> None:
        endpoint = error.details.get("endpoint")
        if endpoint is None and record.failures:
            endpoint = record.failures[0].get("endpoint")
        logger.error(f"[PIPELINE] Stage {record.stage} ({record.name}) failed: {error}")
        logger.error(
            f"[PIPELINE] Diagnostics: {len(record.failures)} failure(s) recorded"
            + (f", first failing endpoint {endpoint}" if endpoint else "")
        )

    def _log_summary(self, result: RunResult) -> None:
        for report in result.reports:
            logger.info(f"[SUMMARY] {report.asset_uid} ({report.asset_name}): {report.counters.summary()}")
        if result.reports:
            logger.info(f"[SUMMARY] Overall: {result.counters.summary()}")
        logger.info(
            f"[SUMMARY] Run {result.status.value} at stage {result.stage_reached} (exit code {result.exit_code})"
        )
