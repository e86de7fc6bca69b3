import csv
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from core import constants
from core.exceptions import ConfigurationException
from core.utils import format_validation_errors


class Settings(BaseSettings):
    """Environment / .env settings. Every field has a default."""

    # --- Remote Platform ---
    API_SERVER_URL: Optional[str] = Field(None, description="Survey API server URL")
    MEDIA_SERVER_URL: Optional[str] = Field(None, description="Media server URL for attachments")
    TOKEN: Optional[str] = Field(None, description="API token (anonymous access when unset)")
    AUTH_SCHEME: str = Field(constants.DEFAULT_AUTH_SCHEME, description="Authorization header scheme")

    # --- Retries & Timeouts (seconds) ---
    MAX_REQUEST_RETRIES: int = Field(constants.DEFAULT_MAX_REQUEST_RETRIES)
    MAX_DOWNLOAD_RETRIES: int = Field(constants.DEFAULT_MAX_DOWNLOAD_RETRIES)
    REQUEST_TIMEOUT: float = Field(constants.DEFAULT_REQUEST_TIMEOUT)
    CONNECTION_TIMEOUT: Optional[float] = Field(None, description="Defaults to request timeout + 3s")
    DOWNLOAD_TIMEOUT: Optional[float] = Field(None, description="Idle stream timeout, defaults to request timeout + 6s")
    PAGE_SIZE: int = Field(constants.DEFAULT_PAGE_SIZE)

    # --- Output ---
    OUTPUT_DIR: Optional[str] = Field(None, description="Directory holding images, manifests and runs")
    DELETE_IMAGES: bool = Field(False, description="Hard delete instead of moving to the run quarantine")
    CLEAN_ORPHANS: bool = Field(False, description="Retire submissions no longer present on the server")

    # --- Logging ---
    LOG_LEVEL: str = Field(constants.DEFAULT_LOG_LEVEL, description="Logging level")
    LOG_FILE: Optional[str] = Field(None, description="Log file path (defaults to the run logs dir)")
    LOG_FORMAT: str = Field(constants.DEFAULT_LOG_FORMAT, description="Log format (text/json)")
    LOG_MAX_BYTES: int = Field(constants.DEFAULT_LOG_MAX_BYTES, description="Max log file size")
    LOG_BACKUP_COUNT: int = Field(constants.DEFAULT_LOG_BACKUP_COUNT, description="Log backup count")
    LOG_TIMEZONE: str = Field(constants.DEFAULT_LOG_TIMEZONE, description="Timezone of log timestamps")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "KT_"
        case_sensitive = True
        extra = "ignore"


# =============================================================================
# Run file (JSON)
# =============================================================================


class AssetFilterEntry(BaseModel):
    """One `filters` entry of a run file."""

    model_config = ConfigDict(extra="forbid")

    assetId: str = Field(..., min_length=1)
    submissionIds: Optional[List[Union[int, str]]] = None
    submissionIdsCsv: Optional[str] = Field(None, min_length=1)


class RunFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filters: List[AssetFilterEntry] = Field(default_factory=list)
    token: Optional[str] = None
    apiServerUrl: Optional[str] = None
    mediaServerUrl: Optional[str] = None
    outputDir: Optional[str] = None
    maxRequestRetries: Optional[int] = None
    maxDownloadRetries: Optional[int] = None
    requestTimeout: Optional[float] = None
    connectionTimeout: Optional[float] = None
    downloadTimeout: Optional[float] = None
    pageSize: Optional[int] = None
    deleteImages: Optional[bool] = None
    cleanOrphans: Optional[bool] = None


# run file key -> Settings field
RUN_FILE_KEYS = {
    "token": "TOKEN",
    "apiServerUrl": "API_SERVER_URL",
    "mediaServerUrl": "MEDIA_SERVER_URL",
    "outputDir": "OUTPUT_DIR",
    "maxRequestRetries": "MAX_REQUEST_RETRIES",
    "maxDownloadRetries": "MAX_DOWNLOAD_RETRIES",
    "requestTimeout": "REQUEST_TIMEOUT",
    "connectionTimeout": "CONNECTION_TIMEOUT",
    "downloadTimeout": "DOWNLOAD_TIMEOUT",
    "pageSize": "PAGE_SIZE",
    "deleteImages": "DELETE_IMAGES",
    "cleanOrphans": "CLEAN_ORPHANS",
}


# =============================================================================
# Immutable run configuration
# =============================================================================


class AssetFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_uid: str
    submission_ids: Tuple[int, ...] = ()


class RunConfig(BaseModel):
    """Immutable configuration value passed to every component."""

    model_config = ConfigDict(frozen=True)

    api_server_url: str
    media_server_url: str
    token: Optional[str] = None
    auth_scheme: str = constants.DEFAULT_AUTH_SCHEME
    max_request_retries: int = Field(constants.DEFAULT_MAX_REQUEST_RETRIES, ge=1)
    max_download_retries: int = Field(constants.DEFAULT_MAX_DOWNLOAD_RETRIES, ge=1)
    request_timeout: float = Field(constants.DEFAULT_REQUEST_TIMEOUT, gt=0)
    connection_timeout: float = Field(
        constants.DEFAULT_REQUEST_TIMEOUT + constants.CONNECTION_TIMEOUT_MARGIN, gt=0
    )
    download_timeout: float = Field(
        constants.DEFAULT_REQUEST_TIMEOUT + constants.DOWNLOAD_TIMEOUT_MARGIN, gt=0
    )
    page_size: int = Field(constants.DEFAULT_PAGE_SIZE, ge=1)
    output_dir: Path = Path(constants.DEFAULT_OUTPUT_DIR)
    delete_images: bool = False
    clean_orphans: bool = False
    filters: Tuple[AssetFilter, ...] = ()

    @field_validator("api_server_url", "media_server_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")
        return v.rstrip("/")

    def asset_uids(self) -> List[str]:
        return [f.asset_uid for f in self.filters]

    def submission_ids_for(self, asset_uid: str) -> Tuple[int, ...]:
        for f in self.filters:
            if f.asset_uid == asset_uid:
                return f.submission_ids
        return ()


# =============================================================================
# Loading
# =============================================================================


def _lookup_file(name: str, base_dir: Path, subdir: str) -> Path:
    """Looks for a file as given, then in base_dir/subdir, then in base_dir."""
    looked: List[str] = []
    first = Path(name).resolve()
    if first.is_file():
        return first
    looked.append(str(first))

    if Path(name).parent == Path("."):
        for candidate in (base_dir / subdir / name, base_dir / name):
            candidate = candidate.resolve()
            if candidate.is_file():
                return candidate
            looked.append(str(candidate))

    raise ConfigurationException(f"File not found: {name}", {"looked_in": looked})


def parse_submission_ids(values: List[Any], source: str) -> List[int]:
    """Normalizes ints / int-parsable strings, removing duplicates (order kept)."""
    ids: List[int] = []
    errors: List[str] = []
    for i, value in enumerate(values):
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            errors.append(f"entry {i}: int or string parsable to int expected")
            continue
        try:
            number = float(value)
        except ValueError:
            errors.append(f"entry {i}: '{value}' is not a number")
            continue
        if not number.is_integer():
            errors.append(f"entry {i}: '{value}' is not an int")
            continue
        if int(number) not in ids:
            ids.append(int(number))

    if errors:
        raise ConfigurationException(f"Invalid submission ids in {source}", {"errors": errors})
    return ids


def read_submission_ids_csv(path: Path, id_column: str = constants.CSV_ID_COLUMN) -> List[int]:
    """Reads submission ids from the `id` column of a CSV file."""
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            rows = [row for row in csv.reader(f, delimiter=constants.CSV_DELIMITER) if row]
    except (OSError, csv.Error) as e:
        raise ConfigurationException(f"Failed to read CSV file {path}", {"error": str(e)})

    if len(rows) < 2:
        raise ConfigurationException(f"CSV file has no data rows: {path}")

    headers = rows[0]
    if headers.count(id_column) != 1:
        raise ConfigurationException(
            f"CSV file must have exactly one '{id_column}' column: {path}",
            {"headers": headers},
        )
    index = headers.index(id_column)

    values = []
    errors = []
    for line, row in enumerate(rows[1:], start=2):
        value = row[index].strip() if index < len(row) else ""
        if not value:
            errors.append(f"line {line}: id is empty")
        values.append(value)
    if errors:
        raise ConfigurationException(f"CSV file has errors: {path}", {"errors": errors})

    return parse_submission_ids(values, str(path))


def load_run_file(config_file: str, base_dir: Path) -> Tuple[RunFile, Tuple[AssetFilter, ...]]:
    path = _lookup_file(config_file, base_dir, constants.RUN_CONFIGS_DIR_NAME)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationException(f"Failed to parse run file {path}", {"error": str(e)})

    try:
        run_file = RunFile.model_validate(data)
    except ValidationError as e:
        errors = format_validation_errors(e)
        raise ConfigurationException(f"Run file has errors: {path}", {"errors": errors})

    filters = []
    for entry in run_file.filters:
        ids: List[int] = []
        if entry.submissionIds:
            ids = parse_submission_ids(entry.submissionIds, f"{path} [{entry.assetId}]")
        if entry.submissionIdsCsv:
            csv_path = _lookup_file(entry.submissionIdsCsv, base_dir, constants.INPUT_DIR_NAME)
            ids += [i for i in read_submission_ids_csv(csv_path) if i not in ids]
        filters.append(AssetFilter(asset_uid=entry.assetId, submission_ids=tuple(ids)))

    return run_file, tuple(filters)


def build_run_config(
    settings: Optional[Settings] = None,
    config_file: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    base_dir: Optional[Path] = None,
) -> RunConfig:
    """
    Merges configuration sources into a RunConfig.

    Precedence: overrides (CLI) > environment > run file > defaults.
    Overrides use Settings field names; None values are ignored.
    """
    settings = settings or Settings()
    base_dir = base_dir or Path.cwd()

    values: Dict[str, Any] = settings.model_dump()
    filters: Tuple[AssetFilter, ...] = ()

    if config_file:
        run_file, filters = load_run_file(config_file, base_dir)
        for key, field in RUN_FILE_KEYS.items():
            value = getattr(run_file, key)
            if value is not None and field not in settings.model_fields_set:
                values[field] = value

    for field, value in (overrides or {}).items():
        if value is not None:
            values[field] = value

    if not values.get("API_SERVER_URL"):
        raise ConfigurationException("API_SERVER_URL is required, but is not defined")
    if not values.get("MEDIA_SERVER_URL"):
        raise ConfigurationException("MEDIA_SERVER_URL is required, but is not defined")

    if values.get("OUTPUT_DIR"):
        output_dir = Path(values["OUTPUT_DIR"]).expanduser()
        if not output_dir.is_absolute():
            output_dir = base_dir / output_dir
        if not output_dir.is_dir():
            raise ConfigurationException(f"Output directory does not exist: {output_dir}")
    else:
        output_dir = base_dir / constants.DEFAULT_OUTPUT_DIR

    request_timeout = values["REQUEST_TIMEOUT"]
    try:
        return RunConfig(
            api_server_url=values["API_SERVER_URL"],
            media_server_url=values["MEDIA_SERVER_URL"],
            token=values.get("TOKEN") or None,
            auth_scheme=values["AUTH_SCHEME"],
            max_request_retries=values["MAX_REQUEST_RETRIES"],
            max_download_retries=values["MAX_DOWNLOAD_RETRIES"],
            request_timeout=request_timeout,
            connection_timeout=values.get("CONNECTION_TIMEOUT")
            or request_timeout + constants.CONNECTION_TIMEOUT_MARGIN,
            download_timeout=values.get("DOWNLOAD_TIMEOUT")
            or request_timeout + constants.DOWNLOAD_TIMEOUT_MARGIN,
            page_size=values["PAGE_SIZE"],
            output_dir=output_dir.resolve(),
            delete_images=values["DELETE_IMAGES"],
            clean_orphans=values["CLEAN_ORPHANS"],
            filters=filters,
        )
    except ValidationError as e:
        errors = format_validation_errors(e)
        raise ConfigurationException("Invalid configuration", {"errors": errors})
