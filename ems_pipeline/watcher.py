"""
EMS Pipeline — Ingestion coordinator & file watcher
════════════════════════════════════════════════════
Per-path state machine:

    Idle ─▶ Processing ─▶ Completed   (source moved to processed/)
                       └▶ Failed      (source moved to processed/errors/
                                       + <name>.error.log sidecar)

At most one attempt per path is in flight; a second event for a path that is
already processing is dropped. Distinct paths run as independent tasks.

watchdog delivers events on its observer thread; EstimateWatcher hands them to
the asyncio loop with call_soon_threadsafe and the coordinator does the rest.
"""
import asyncio
import logging
import shutil
import threading
import time
import traceback
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .assembler import EstimateAssembler
from .associations import AssociationStrategy, FilenameAssociation
from .config import ESTIMATE_EXTENSIONS, IMAGE_EXTENSIONS, PipelineConfig
from .models import ProcessingLogEntry, ProcessingStatus
from .ocr import ImageProcessor, ImageValidationError, classify_image
from .reliability import with_deadline

log = logging.getLogger("ems.watcher")


class ImageUploadError(RuntimeError):
    """One or more associated images could not be stored."""


# ============================================================
# Helpers
# ============================================================

def timestamped_name(file_name: str, now: Optional[datetime] = None) -> str:
    """2024-03-01T14-05-09-123Z_<name>: sorts chronologically, avoids collisions."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
    return f"{stamp}_{file_name}"


def find_files(base_dir: Path, extensions: Iterable[str],
               exclude: Iterable[Path] = ()) -> List[Path]:
    """Recursively find files with given extensions (case-insensitive), skipping dotfiles."""
    if not base_dir.exists():
        return []
    ext_set = {e.lower() for e in extensions}
    excluded = [Path(p).absolute() for p in exclude]
    found = []
    for f in base_dir.rglob("*"):
        if not f.is_file() or f.suffix.lower() not in ext_set:
            continue
        if any(part.startswith(".") for part in f.relative_to(base_dir).parts):
            continue
        if _is_within(f, excluded):
            continue
        found.append(f)
    return sorted(found)


def _is_within(path: Path, dirs: List[Path]) -> bool:
    path = path.absolute()
    return any(path == d or d in path.parents for d in dirs)


# ============================================================
# In-flight registry
# ============================================================

class InFlightRegistry:
    """Set of paths currently being processed; check-and-insert is atomic."""

    def __init__(self):
        self._lock = threading.Lock()
        self._paths: Set[str] = set()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._paths:
                return False
            self._paths.add(key)
            return True

    def release(self, key: str) -> bool:
        with self._lock:
            if key in self._paths:
                self._paths.remove(key)
                return True
            return False

    def __contains__(self, key: str) -> bool:
        return key in self._paths

    def __len__(self) -> int:
        return len(self._paths)


@dataclass
class IngestionCounters:
    detected: int = 0
    completed: int = 0
    failed: int = 0
    dropped_duplicates: int = 0
    images_uploaded: int = 0
    images_failed: int = 0
    images_unassociated: int = 0
    images_already_stored: int = 0


# ============================================================
# Coordinator
# ============================================================

class IngestionCoordinator:

    def __init__(self, gateway, config: PipelineConfig,
                 assembler: Optional[EstimateAssembler] = None,
                 images: Optional[ImageProcessor] = None,
                 association: Optional[AssociationStrategy] = None,
                 relocate: bool = True):
        self.gateway = gateway
        self.config = config
        self.relocate = relocate
        self.assembler = assembler or EstimateAssembler()
        self.images = images or ImageProcessor(
            enabled=config.enable_ocr,
            max_file_size_mb=config.max_file_size_mb,
            timeout_seconds=config.ocr_timeout_seconds,
        )
        self.association = association or FilenameAssociation(max_suffix=config.max_image_suffix)
        self.registry = InFlightRegistry()
        self.image_registry = InFlightRegistry()
        self.counters = IngestionCounters()
        self._settling: Set[str] = set()

    @staticmethod
    def key(path: Path) -> str:
        return str(Path(path).absolute())

    def stats(self) -> Dict:
        return {
            **asdict(self.counters),
            "in_flight": len(self.registry),
            "images_in_flight": len(self.image_registry),
        }

    # ── event entry points ───────────────────────────────────

    async def wait_until_stable(self, path: Path) -> bool:
        """Poll the file size until unchanged for the quiet window. False if it vanished."""
        loop = asyncio.get_running_loop()
        last_size, stable_since = -1, loop.time()
        while True:
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                return False
            now = loop.time()
            if size != last_size:
                last_size, stable_since = size, now
            elif now - stable_since >= self.config.stability_seconds:
                return True
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _settle(self, path: Path) -> bool:
        # Repeated created/modified events for one path share a single wait
        key = self.key(path)
        if key in self._settling:
            return False
        self._settling.add(key)
        try:
            return await self.wait_until_stable(path)
        finally:
            self._settling.discard(key)

    async def handle_estimate_event(self, path: Path) -> Optional[str]:
        path = Path(path)
        if not await self._settle(path):
            return None
        return await self.process_estimate_file(path)

    async def handle_image_event(self, path: Path) -> Optional[str]:
        path = Path(path)
        if not await self._settle(path):
            return None
        log.info(f"New image file detected: {path.name}")
        try:
            estimate = await self.association.resolve_estimate(path, self.gateway)
            if estimate is None:
                self.counters.images_unassociated += 1
                return None
            return await self.process_image(path, str(estimate["id"]))
        except Exception as e:
            self.counters.images_failed += 1
            log.error(f"✗ Failed to process image {path.name}: {e}")
            return None

    def handle_removed(self, path: Path):
        log.info(f"EMS file removed: {Path(path).name}")
        self.registry.release(self.key(path))

    # ── estimate pipeline ────────────────────────────────────

    async def process_estimate_file(self, path: Path) -> Optional[str]:
        """Run one file through parse → upsert → images → relocate. Returns the estimate id."""
        path = Path(path)
        key = self.key(path)
        if not self.registry.try_acquire(key):
            self.counters.dropped_duplicates += 1
            log.debug(f"⊘ {path.name} is already being processed, skipping")
            return None

        self.counters.detected += 1
        start = time.monotonic()
        try:
            await self._append_log(path, ProcessingStatus.PROCESSING)
            log.info(f"▶ Processing EMS file: {path.name}")

            loop = asyncio.get_running_loop()
            estimate = await loop.run_in_executor(None, self.assembler.parse_file, path)
            result = await self.gateway.upsert_estimate(estimate)
            estimate_id = str(result["id"])

            if self.config.enable_image_processing:
                await self.process_associated_images(path, estimate_id)

            if self.relocate:
                self.move_to_processed(path)
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self.counters.completed += 1
            await self._append_log(
                path, ProcessingStatus.COMPLETED,
                records_processed=1 + len(estimate.line_items),
                errors_count=len(estimate.metadata.parsing_errors),
                processing_time_ms=elapsed_ms,
                estimate_id=estimate_id,
            )
            log.info(f"✓ Processed {path.name} → estimate {estimate_id} ({elapsed_ms}ms)")
            return estimate_id

        except Exception as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self.counters.failed += 1
            log.error(f"✗ Failed to process EMS file {path.name}: {e}")
            if self.relocate:
                self.move_to_errors(path, e)
            await self._append_log(
                path, ProcessingStatus.ERROR,
                errors_count=1,
                error_details=[{
                    "message": str(e),
                    "type": type(e).__name__,
                    "traceback": "".join(traceback.format_exception(type(e), e, e.__traceback__)),
                }],
                processing_time_ms=elapsed_ms,
            )
            return None

        finally:
            self.registry.release(key)

    async def process_associated_images(self, estimate_path: Path, estimate_id: str) -> int:
        """
        Fan out over every associated image and join all; returns the number uploaded.

        Unusable images are skipped. If any upload failed, ImageUploadError is
        raised once every sibling has finished.
        """
        images = self.association.find_images(estimate_path)
        if not images:
            return 0
        results = await asyncio.gather(
            *(self.process_image(p, estimate_id) for p in images),
            return_exceptions=True,
        )
        uploaded, upload_failures = 0, []
        for image_path, result in zip(images, results):
            if isinstance(result, ImageValidationError):
                self.counters.images_failed += 1
                log.warning(f"⊘ Skipping image {image_path.name}: {result}")
            elif isinstance(result, Exception):
                self.counters.images_failed += 1
                log.error(f"✗ Failed to upload image {image_path.name}: {result}")
                upload_failures.append(f"{image_path.name}: {result}")
            elif result:
                uploaded += 1
        log.info(f"Processed {uploaded}/{len(images)} associated images for {estimate_path.name}")
        if upload_failures:
            raise ImageUploadError(
                f"{len(upload_failures)} image upload(s) failed: " + "; ".join(upload_failures)
            )
        return uploaded

    async def process_image(self, image_path: Path, estimate_id: str) -> Optional[str]:
        """
        Validate, upload and OCR one image. Upload errors propagate; OCR errors do not.

        An image already stored for this estimate under the same name and size is skipped.
        """
        image_key = self.key(image_path)
        if not self.image_registry.try_acquire(image_key):
            log.debug(f"⊘ {image_path.name} is already being uploaded, skipping")
            return None
        try:
            loop = asyncio.get_running_loop()
            kind, data = await loop.run_in_executor(None, self._load_image, image_path)
            stored = await self.gateway.find_image(estimate_id, image_path.name, len(data))
            if stored is not None:
                self.counters.images_already_stored += 1
                log.info(f"⊘ {image_path.name} is already stored for estimate {estimate_id}, skipping")
                return None
            record = await with_deadline(
                self.gateway.upload_image(
                    data, estimate_id, kind, image_path.name, source_path=str(image_path)
                ),
                self.config.upload_timeout_seconds,
                f"upload of {image_path.name}",
            )
            image_id = str(record["id"])
            self.counters.images_uploaded += 1

            ocr = await self.images.extract_text(image_path)
            if ocr is not None:
                await self.gateway.attach_ocr(image_id, ocr)
                log.info(f"OCR processed for image: {image_path.name}")
            return image_id
        finally:
            self.image_registry.release(image_key)

    def _load_image(self, image_path: Path):
        self.images.validate(image_path)
        return classify_image(image_path), image_path.read_bytes()

    # ── relocation & logging ─────────────────────────────────

    def move_to_processed(self, path: Path) -> Optional[Path]:
        try:
            self.config.processed_path.mkdir(parents=True, exist_ok=True)
            dest = self.config.processed_path / timestamped_name(path.name)
            shutil.move(str(path), str(dest))
            log.debug(f"Moved file to processed: {dest.name}")
            return dest
        except OSError as e:
            log.warning(f"Failed to move {path.name} to processed: {e}")
            return None

    def move_to_errors(self, path: Path, error: BaseException) -> Optional[Path]:
        errors_dir = self.config.errors_path
        dest = errors_dir / timestamped_name(path.name)
        try:
            errors_dir.mkdir(parents=True, exist_ok=True)
            if path.exists():
                shutil.move(str(path), str(dest))
            sidecar = dest.with_name(dest.name + ".error.log")
            sidecar.write_text(
                f"Error: {error}\n"
                f"Type: {type(error).__name__}\n"
                f"Source: {path}\n"
                f"Stack:\n{''.join(traceback.format_exception(type(error), error, error.__traceback__))}"
                f"Timestamp: {datetime.now(timezone.utc).isoformat()}\n"
            )
            log.debug(f"Moved file to error directory: {dest.name}")
            return dest
        except OSError as e:
            log.warning(f"Failed to move {path.name} to error directory: {e}")
            return None

    async def _append_log(self, path: Path, status: ProcessingStatus, **fields):
        location = self.config.location
        entry = ProcessingLogEntry(
            file_name=path.name,
            file_path=str(path),
            status=status,
            shop_name=location.shop_name,
            shop_id=location.shop_id,
            computer_name=location.computer_name,
            **fields,
        )
        try:
            await self.gateway.append_processing_log(entry)
        except Exception as e:
            log.warning(f"Failed to write {status.value} log for {path.name}: {e}")


# ============================================================
# watchdog bridge
# ============================================================

class _EventBridge(FileSystemEventHandler):
    """Runs on the observer thread; forwards to the watcher's loop."""

    def __init__(self, watcher: "EstimateWatcher"):
        self.watcher = watcher

    def on_created(self, event):
        if not event.is_directory:
            self.watcher.dispatch("created", event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self.watcher.dispatch("modified", event.src_path)

    def on_deleted(self, event):
        if not event.is_directory:
            self.watcher.dispatch("deleted", event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self.watcher.dispatch("deleted", event.src_path)
            self.watcher.dispatch("created", event.dest_path)


class EstimateWatcher:
    """Live watch over the export roots plus a one-time scan of existing files."""

    def __init__(self, coordinator: IngestionCoordinator, config: PipelineConfig):
        self.coordinator = coordinator
        self.config = config
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.observer = None
        self._tasks: Set[asyncio.Task] = set()
        self._excluded = [config.processed_path.absolute(), config.errors_path.absolute()]

    @property
    def is_watching(self) -> bool:
        return self.observer is not None and self.observer.is_alive()

    def kind_of(self, path: Path) -> Optional[str]:
        suffix = path.suffix.lower()
        if suffix in ESTIMATE_EXTENSIONS:
            return "estimate"
        if suffix in IMAGE_EXTENSIONS:
            return "image"
        return None

    def is_ignored(self, path: Path) -> bool:
        if path.name.startswith("."):
            return True
        for root in self.config.export_paths:
            try:
                rel = path.absolute().relative_to(root.absolute())
            except ValueError:
                continue
            if any(part.startswith(".") for part in rel.parts):
                return True
        return _is_within(path, self._excluded)

    def existing_files(self) -> List[Path]:
        files = []
        for root in self.config.export_paths:
            files.extend(find_files(root, ESTIMATE_EXTENSIONS, exclude=self._excluded))
        return files

    # ── thread → loop ────────────────────────────────────────

    def dispatch(self, event_type: str, src_path: str):
        if self.loop is not None and not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.route, event_type, Path(src_path))

    def route(self, event_type: str, path: Path):
        if self.observer is None:
            return
        kind = self.kind_of(path)
        if kind is None or self.is_ignored(path):
            return
        if event_type == "deleted":
            if kind == "estimate":
                self.coordinator.handle_removed(path)
            return
        if kind == "estimate":
            log.info(f"EMS file {event_type}: {path.name}")
            self.spawn(self.coordinator.handle_estimate_event(path))
        elif self.config.enable_image_processing:
            self.spawn(self.coordinator.handle_image_event(path))

    def spawn(self, coro) -> asyncio.Task:
        task = self.loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── lifecycle ────────────────────────────────────────────

    async def start(self):
        self.loop = asyncio.get_running_loop()
        self.config.processed_path.mkdir(parents=True, exist_ok=True)
        self.config.errors_path.mkdir(parents=True, exist_ok=True)

        self.observer = Observer()
        bridge = _EventBridge(self)
        for root in self.config.export_paths:
            root.mkdir(parents=True, exist_ok=True)
            self.observer.schedule(bridge, str(root), recursive=True)
            log.info(f"Watching {root} for EMS files and images")
        self.observer.start()

        existing = self.existing_files()
        if existing:
            log.info(f"Found {len(existing)} existing EMS file(s), queueing")
        for path in existing:
            self.spawn(self.coordinator.process_estimate_file(path))
        log.info("File watcher ready and monitoring for changes")

    async def stop(self):
        """Stop event delivery, then wait for in-flight files to finish."""
        if self.observer is not None:
            self.observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, self.observer.join)
            self.observer = None
            log.info("File watcher stopped")
        if self._tasks:
            log.info(f"Waiting for {len(self._tasks)} in-flight task(s)...")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
