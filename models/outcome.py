from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class OutcomeStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


class SyncOp(str, Enum):
    UP_TO_DATE = "up_to_date"
    DOWNLOAD = "download"
    DELETE = "delete"
    SKIP_INCONSISTENT = "skip_inconsistent"
    UNRESOLVED = "unresolved"
    RETIRE_SUPERSEDED = "retire_superseded"
    CLEANUP_ORPHAN = "cleanup_orphan"


class ItemOutcome(BaseModel):
    """Terminal state of one (submission, field) item."""

    status: OutcomeStatus
    op: SyncOp
    path: Optional[str] = None
    detail: str = ""
    submission_id: Optional[int] = None
    field: Optional[str] = None


class SyncCounters(BaseModel):
    up_to_date: int = 0
    downloaded: int = 0
    deleted: int = 0
    skipped: int = 0
    warnings: int = 0
    errors: int = 0

    def add(self, other: "SyncCounters") -> "SyncCounters":
        """Order-independent sum."""
        return SyncCounters(
            **{name: getattr(self, name) + getattr(other, name) for name in SyncCounters.model_fields}
        )

    def summary(self) -> str:
        return ", ".join(f"{name}={getattr(self, name)}" for name in SyncCounters.model_fields)


class AssetSyncReport(BaseModel):
    asset_uid: str
    asset_name: str
    outcomes: List[ItemOutcome] = Field(default_factory=list)
    cleanup_outcomes: List[ItemOutcome] = Field(default_factory=list)
    counters: SyncCounters = Field(default_factory=SyncCounters)

    @property
    def failed_items(self) -> List[ItemOutcome]:
        return [o for o in self.outcomes + self.cleanup_outcomes if o.status == OutcomeStatus.ERROR]


# =============================================================================
# Fetch / stage reports
# =============================================================================


class FetchStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


class PageReport(BaseModel):
    advertised: int = 0  # total announced by the server
    fetched: int = 0
    projected: int = 0  # kept after projection
    pages: int = 0
    attempts: int = 0
    failed_endpoint: Optional[str] = None
    detail: str = ""


class PageResult(BaseModel):
    records: List[Dict[str, Any]] = Field(default_factory=list)
    status: FetchStatus = FetchStatus.OK
    report: PageReport = Field(default_factory=PageReport)

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK


class RunStatus(str, Enum):
    DONE = "done"
    STOPPED = "stopped"  # a stage returned nothing, clean early stop
    FAILED = "failed"


class StageRecord(BaseModel):
    stage: int
    name: str
    count: int = 0
    failures: List[Dict[str, Any]] = Field(default_factory=list)
    duration_ms: float = 0.0


class RunResult(BaseModel):
    status: RunStatus
    stage_reached: int
    run_dir: Optional[str] = None
    error: Optional[str] = None
    stages: List[StageRecord] = Field(default_factory=list)
    counters: SyncCounters = Field(default_factory=SyncCounters)
    reports: List[AssetSyncReport] = Field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.status == RunStatus.FAILED else 0
