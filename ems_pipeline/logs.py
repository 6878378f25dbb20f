"""
EMS Pipeline — Logging setup
═════════════════════════════
Console logging always; rotating combined.log / error.log under the logs
directory when file logging is enabled.
"""
import logging
from logging.handlers import RotatingFileHandler
from typing import Dict

from .config import LOG_DATEFMT, LOG_FORMAT, PipelineConfig

log = logging.getLogger("ems")

MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 5


def setup_logging(config: PipelineConfig):
    level = getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if not config.log_to_file:
        return

    config.logs_path.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    root = logging.getLogger()

    combined = RotatingFileHandler(
        config.logs_path / "combined.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
    )
    combined.setFormatter(formatter)
    root.addHandler(combined)

    errors = RotatingFileHandler(
        config.logs_path / "error.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
    )
    errors.setLevel(logging.ERROR)
    errors.setFormatter(formatter)
    root.addHandler(errors)


def log_startup(config: PipelineConfig, mode: str):
    roots = ", ".join(str(p) for p in config.export_paths)
    log.info(f"╔{'═'*58}╗")
    log.info(f"║  EMS Estimate Pipeline — {mode:<32}║")
    log.info(f"╠{'═'*58}╣")
    log.info(f"║  Export roots:  {roots[:41]:<41}║")
    log.info(f"║  Processed:     {str(config.processed_path)[:41]:<41}║")
    log.info(f"║  Errors:        {str(config.errors_path)[:41]:<41}║")
    log.info(f"║  Logs:          {str(config.logs_path)[:41]:<41}║")
    log.info(f"║  OCR enabled:   {str(config.enable_ocr):<41}║")
    log.info(f"║  Images:        {str(config.enable_image_processing):<41}║")
    log.info(f"║  Shop:          {(config.location.shop_name or '-')[:41]:<41}║")
    log.info(f"║  Log level:     {config.log_level:<41}║")
    log.info(f"╚{'═'*58}╝")


def log_shutdown():
    log.info("=" * 60)
    log.info("EMS Estimate Pipeline shutting down")
    log.info("=" * 60)


def log_stats(stats: Dict):
    log.info("📊 Processing statistics:")
    log.info(f"   Total files:   {stats.get('total_files', 0)}")
    log.info(f"   Successful:    {stats.get('successful', 0)}")
    log.info(f"   Failed:        {stats.get('failed', 0)}")
    log.info(f"   In flight:     {stats.get('in_flight', 0)}")
    log.info(f"   Total records: {stats.get('total_records', 0)}")
    log.info(f"   Total errors:  {stats.get('total_errors', 0)}")
