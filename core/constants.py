# Network Settings (seconds)
DEFAULT_REQUEST_TIMEOUT = 15.0
CONNECTION_TIMEOUT_MARGIN = 3.0  # connection timeout = request timeout + margin
DOWNLOAD_TIMEOUT_MARGIN = 6.0  # idle download timeout = request timeout + margin
DEFAULT_MAX_REQUEST_RETRIES = 20
DEFAULT_MAX_DOWNLOAD_RETRIES = 30
DEFAULT_PAGE_SIZE = 100
DOWNLOAD_CHUNK_SIZE = 64 * 1024
PROGRESS_LOG_STEP = 25  # percent between download progress log lines

# Remote API
DEFAULT_AUTH_SCHEME = "Token"
ASSETS_ENDPOINT = "assets/"
IMAGE_FIELD_TYPE = "image"
IMAGE_MIMETYPE_PREFIX = "image"

# Submission keys always kept by the submissions projection
SUBMISSION_REQUIRED_KEYS = ["_id", "_attachments", "_uuid", "formhub/uuid"]
# Asset keys kept by the listing projection
ASSET_REQUIRED_KEYS = ["uid", "name", "deployment__submission_count"]

# Output Tree
MANIFESTS_DIR_NAME = ".attachments_map"
IMAGES_DIR_NAME = "images"
RUNS_DIR_NAME = "runs"
RUN_DIR_PREFIX = "run_"
RUN_LOGS_DIR_NAME = "logs"
RUN_STEPS_DIR_NAME = "steps"
RUN_DELETED_DIR_NAME = "images_deleted"
DEFAULT_OUTPUT_DIR = "output"
MAX_RUN_DIR_TRIES = 100
PARTIAL_DOWNLOAD_SUFFIX = ".part"
DEFAULT_ASSET_NAME = "asset"

# Hashing
HASH_ALGORITHM = "sha256"
HASH_DIGEST_SIZE = 32
HASH_READ_CHUNK = 8192

# Path components are capped below the common 255-byte limit, leaving room
# for the ".part" and temp-file affixes added while writing
MAX_FILENAME_BYTES = 200

# Run Config Lookup
RUN_CONFIGS_DIR_NAME = "run-configs"
INPUT_DIR_NAME = "input"
CSV_ID_COLUMN = "id"
CSV_DELIMITER = ","

# Logging
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = "sync.log"
DEFAULT_LOG_FORMAT = "text"  # text or json
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_LOG_BACKUP_COUNT = 5
DEFAULT_LOG_TIMEZONE = "UTC"
ROOT_LOGGER_NAME = "imgsync"
