import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

# 1. Setup Logging First (to capture config errors)
from core.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

from core.config import RunConfig, Settings, build_run_config
from core.exceptions import ConfigurationException, SyncException
from models.outcome import RunResult
from services.network.fetcher import RetryingFetcher
from services.pipeline_service import PipelineOrchestrator, RunLayout


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="survey-image-sync",
        description="Mirror survey image attachments to a local directory",
    )
    parser.add_argument("-f", "--config-file", help="Run file (JSON), looked up in run-configs/ too")
    parser.add_argument("-a", "--api-server-url", help="Survey API server URL")
    parser.add_argument("-m", "--media-server-url", help="Media server URL")
    parser.add_argument("-o", "--output-dir", help="Output directory (must exist)")
    parser.add_argument("-t", "--token", help="API token")
    parser.add_argument("--max-request-retries", type=int, help="Attempts per request")
    parser.add_argument("--max-download-retries", type=int, help="Attempts per image download")
    parser.add_argument("--request-timeout", type=float, help="Request timeout in seconds")
    parser.add_argument("--connection-timeout", type=float, help="Per-attempt timeout in seconds")
    parser.add_argument("--download-timeout", type=float, help="Idle timeout of a download stream in seconds")
    parser.add_argument(
        "--delete-images",
        action="store_true",
        default=None,
        help="Delete retired images instead of moving them to the run's images_deleted",
    )
    parser.add_argument(
        "--clean-orphans",
        action="store_true",
        default=None,
        help="Retire local data of submissions no longer on the server",
    )
    parser.add_argument("--log-level", help="Logging level")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    """CLI values keyed by Settings field names."""
    return {
        "API_SERVER_URL": args.api_server_url,
        "MEDIA_SERVER_URL": args.media_server_url,
        "OUTPUT_DIR": args.output_dir,
        "TOKEN": args.token,
        "MAX_REQUEST_RETRIES": args.max_request_retries,
        "MAX_DOWNLOAD_RETRIES": args.max_download_retries,
        "REQUEST_TIMEOUT": args.request_timeout,
        "CONNECTION_TIMEOUT": args.connection_timeout,
        "DOWNLOAD_TIMEOUT": args.download_timeout,
        "DELETE_IMAGES": args.delete_images,
        "CLEAN_ORPHANS": args.clean_orphans,
    }


async def run_pipeline(config: RunConfig, layout: RunLayout) -> RunResult:
    async with RetryingFetcher.create_session(config) as session:
        return await PipelineOrchestrator(config, session, layout).run()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # 2. Load Config
    try:
        settings = Settings()
        config = build_run_config(settings, args.config_file, overrides_from_args(args), base_dir=Path.cwd())
    except ConfigurationException as e:
        logger.critical(f"Invalid configuration: {e}")
        return 1

    # 3. Run directory, then the run log inside it
    try:
        layout = RunLayout(config.output_dir).create()
    except OSError as e:
        logger.critical(f"Failed to create output tree in {config.output_dir}: {e}")
        return 1

    setup_logging(
        log_level=args.log_level or settings.LOG_LEVEL,
        log_file=settings.LOG_FILE or str(layout.log_file),
        log_format=settings.LOG_FORMAT,
        timezone=settings.LOG_TIMEZONE,
        max_bytes=settings.LOG_MAX_BYTES,
        backup_count=settings.LOG_BACKUP_COUNT,
        secrets=[config.token] if config.token else None,
    )

    logger.info("=" * 60)
    logger.info("Survey Image Sync - Starting")
    logger.info("=" * 60)
    logger.info(f"API server: {config.api_server_url}")
    logger.info(f"Media server: {config.media_server_url}")
    logger.info(f"Output: {config.output_dir}")
    logger.info(f"Asset filters: {config.asset_uids() or 'all assets'}")

    try:
        result = asyncio.run(run_pipeline(config, layout))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except SyncException as e:
        logger.critical(f"Run failed: {e}")
        return 1
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        return 1

    return result.exit_code


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
