"""
EMS Pipeline — Configuration
═════════════════════════════
All config comes from environment variables, optionally seeded from a .env
file (EMS_ENV_FILE, default ./.env). Real environment always wins over .env.
DATABASE_URL is only required where a live backend is needed.
"""
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

# ── Paths ────────────────────────────────────────────────────
ENV_FILE = Path(os.getenv("EMS_ENV_FILE", ".env"))

ESTIMATE_EXTENSIONS = (".ems",)
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".pdf")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


# ── Load .env ────────────────────────────────────────────────
def load_env(env_file: Path = ENV_FILE):
    if env_file.exists():
        for line in env_file.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                k, v = line.split("=", 1)
                os.environ.setdefault(k.strip(), v.strip().strip('"').strip("'"))


def _require(key: str) -> str:
    val = os.getenv(key)
    if not val:
        raise RuntimeError(f"Missing required env var: {key} — check {ENV_FILE}")
    return val


def _flag(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ("1", "true", "yes", "on")


def _paths(raw: str) -> List[Path]:
    return [Path(p.strip()).expanduser() for p in raw.split(",") if p.strip()]


@dataclass
class LocationInfo:
    """Shop/computer tags stamped on every estimate and log row."""
    shop_name: str = ""
    shop_id: str = ""
    address: str = ""
    region: str = ""
    contact: str = ""
    timezone: str = ""
    computer_name: str = field(default_factory=platform.node)

    @classmethod
    def from_env(cls) -> "LocationInfo":
        return cls(
            shop_name=os.getenv("SHOP_NAME", ""),
            shop_id=os.getenv("SHOP_ID", ""),
            address=os.getenv("SHOP_ADDRESS", ""),
            region=os.getenv("SHOP_REGION", ""),
            contact=os.getenv("SHOP_CONTACT", ""),
            timezone=os.getenv("SHOP_TIMEZONE", ""),
            computer_name=os.getenv("COMPUTER_NAME", "") or platform.node(),
        )


@dataclass
class PipelineConfig:
    export_paths: List[Path] = field(default_factory=lambda: [Path("exports")])
    processed_path: Path = Path("processed")
    errors_path: Optional[Path] = None
    logs_path: Path = Path("logs")

    database_url: str = ""
    storage_url: str = ""
    storage_key: str = ""
    storage_bucket: str = "estimate-images"

    enable_ocr: bool = True
    enable_image_processing: bool = True
    max_file_size_mb: float = 50.0
    batch_size: int = 10
    stability_seconds: float = 2.0
    poll_interval_seconds: float = 0.1
    max_image_suffix: int = 10
    ocr_timeout_seconds: float = 120.0
    upload_timeout_seconds: float = 60.0
    stats_interval_seconds: float = 300.0

    log_level: str = "INFO"
    log_to_file: bool = True

    location: LocationInfo = field(default_factory=LocationInfo)

    def __post_init__(self):
        if self.errors_path is None:
            self.errors_path = self.processed_path / "errors"

    @classmethod
    def from_env(cls, require_database: bool = True) -> "PipelineConfig":
        load_env()
        processed = Path(os.getenv("EMS_PROCESSED_PATH", "processed")).expanduser()
        errors = os.getenv("EMS_ERRORS_PATH")
        return cls(
            export_paths=_paths(os.getenv("EMS_EXPORT_PATHS", "exports")),
            processed_path=processed,
            errors_path=Path(errors).expanduser() if errors else None,
            logs_path=Path(os.getenv("EMS_LOGS_PATH", "logs")).expanduser(),
            database_url=_require("DATABASE_URL") if require_database else os.getenv("DATABASE_URL", ""),
            storage_url=os.getenv("STORAGE_URL", ""),
            storage_key=os.getenv("STORAGE_KEY", ""),
            storage_bucket=os.getenv("STORAGE_BUCKET", "estimate-images"),
            enable_ocr=_flag("EMS_ENABLE_OCR", "true"),
            enable_image_processing=_flag("EMS_ENABLE_IMAGE_PROCESSING", "true"),
            max_file_size_mb=float(os.getenv("EMS_MAX_FILE_SIZE_MB", "50")),
            batch_size=int(os.getenv("EMS_BATCH_SIZE", "10")),
            stability_seconds=float(os.getenv("EMS_STABILITY_SECONDS", "2.0")),
            poll_interval_seconds=float(os.getenv("EMS_POLL_INTERVAL_SECONDS", "0.1")),
            max_image_suffix=int(os.getenv("EMS_MAX_IMAGE_SUFFIX", "10")),
            ocr_timeout_seconds=float(os.getenv("EMS_OCR_TIMEOUT_SECONDS", "120")),
            upload_timeout_seconds=float(os.getenv("EMS_UPLOAD_TIMEOUT_SECONDS", "60")),
            stats_interval_seconds=float(os.getenv("EMS_STATS_INTERVAL_SECONDS", "300")),
            log_level=os.getenv("EMS_LOG_LEVEL", "INFO").upper(),
            log_to_file=_flag("EMS_LOG_TO_FILE", "true"),
            location=LocationInfo.from_env(),
        )
