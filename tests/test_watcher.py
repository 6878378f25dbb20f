import asyncio
import threading
from datetime import datetime, timezone

from PIL import Image

from ems_pipeline.assembler import EstimateAssembler
from ems_pipeline.models import ProcessingStatus
from ems_pipeline.store import MemoryGateway
from ems_pipeline.watcher import (
    EstimateWatcher, InFlightRegistry, IngestionCoordinator, find_files, timestamped_name,
)


class CountingAssembler(EstimateAssembler):
    def __init__(self):
        self.calls = 0

    def parse_file(self, path):
        self.calls += 1
        return super().parse_file(path)


class SlowGateway(MemoryGateway):
    """Yields to the loop inside upsert so overlapping attempts really overlap."""

    async def upsert_estimate(self, estimate):
        await asyncio.sleep(0.05)
        return await super().upsert_estimate(estimate)


class FailingGateway(MemoryGateway):
    async def upsert_estimate(self, estimate):
        raise ConnectionError("database unavailable")


class BrokenUploadGateway(MemoryGateway):
    async def upload_image(self, data, estimate_id, kind, file_name, source_path=""):
        if file_name.endswith("_1.png"):
            raise RuntimeError("bucket rejected upload")
        return await super().upload_image(data, estimate_id, kind, file_name, source_path)


def _png(path):
    Image.new("RGB", (8, 8), "white").save(path)


def _statuses(gateway):
    return [(e.file_name, e.status) for e in gateway.logs]


# ── registry ─────────────────────────────────────────────────

def test_registry_check_and_insert():
    registry = InFlightRegistry()
    assert registry.try_acquire("/x/a.ems")
    assert not registry.try_acquire("/x/a.ems")
    assert "/x/a.ems" in registry
    assert len(registry) == 1
    assert registry.release("/x/a.ems")
    assert not registry.release("/x/a.ems")
    assert registry.try_acquire("/x/a.ems")


def test_registry_is_atomic_across_threads():
    registry = InFlightRegistry()
    wins = []
    barrier = threading.Barrier(8)

    def contend():
        barrier.wait()
        if registry.try_acquire("/x/same.ems"):
            wins.append(1)

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(wins) == 1


# ── pipeline ─────────────────────────────────────────────────

def test_success_moves_to_processed_and_logs(config, export_dir, sample_bytes):
    path = export_dir / "ACME-1001.ems"
    path.write_bytes(sample_bytes)
    gateway = MemoryGateway(location=config.location)
    coordinator = IngestionCoordinator(gateway, config)

    estimate_id = asyncio.run(coordinator.process_estimate_file(path))

    assert estimate_id in gateway.estimates
    assert not path.exists()
    moved = list(config.processed_path.glob("*_ACME-1001.ems"))
    assert len(moved) == 1
    assert moved[0].read_bytes() == sample_bytes
    assert _statuses(gateway) == [
        ("ACME-1001.ems", ProcessingStatus.PROCESSING),
        ("ACME-1001.ems", ProcessingStatus.COMPLETED),
    ]
    completed = gateway.logs[-1]
    assert completed.estimate_id == estimate_id
    assert completed.records_processed == 3
    assert completed.shop_id == "MS-01"
    assert coordinator.stats()["completed"] == 1
    assert coordinator.stats()["in_flight"] == 0


def test_failure_moves_to_errors_with_sidecar(config, export_dir, sample_bytes):
    path = export_dir / "ACME-1002.ems"
    path.write_bytes(sample_bytes)
    gateway = FailingGateway()
    coordinator = IngestionCoordinator(gateway, config)

    assert asyncio.run(coordinator.process_estimate_file(path)) is None

    assert not path.exists()
    moved = list(config.errors_path.glob("*_ACME-1002.ems"))
    sidecars = list(config.errors_path.glob("*_ACME-1002.ems.error.log"))
    assert len(moved) == 1 and len(sidecars) == 1
    report = sidecars[0].read_text()
    assert "database unavailable" in report
    assert "ConnectionError" in report
    assert "Timestamp:" in report

    assert _statuses(gateway)[-1] == ("ACME-1002.ems", ProcessingStatus.ERROR)
    details = gateway.logs[-1].error_details[0]
    assert details["message"] == "database unavailable"
    assert coordinator.stats()["failed"] == 1
    # registry entry cleared, path eligible again
    assert len(coordinator.registry) == 0


def test_unreadable_file_is_routed_to_errors(config, export_dir):
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)

    asyncio.run(coordinator.process_estimate_file(export_dir / "ghost.ems"))

    assert _statuses(gateway)[-1] == ("ghost.ems", ProcessingStatus.ERROR)
    assert len(list(config.errors_path.glob("*_ghost.ems.error.log"))) == 1


def test_overlapping_attempts_run_once(config, export_dir, sample_bytes):
    path = export_dir / "ACME-1003.ems"
    path.write_bytes(sample_bytes)
    assembler = CountingAssembler()
    gateway = SlowGateway()
    coordinator = IngestionCoordinator(gateway, config, assembler=assembler)

    async def run():
        return await asyncio.gather(
            coordinator.process_estimate_file(path),
            coordinator.process_estimate_file(path),
        )

    results = asyncio.run(run())
    assert assembler.calls == 1
    assert sum(1 for r in results if r) == 1
    assert coordinator.stats()["dropped_duplicates"] == 1
    assert len(gateway.estimates) == 1


def test_reprocessing_identical_content_is_idempotent(config, export_dir, sample_bytes):
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)

    async def run():
        ids = []
        for name in ("first.ems", "second.ems"):
            path = export_dir / name
            path.write_bytes(sample_bytes)
            ids.append(await coordinator.process_estimate_file(path))
        return ids

    first, second = asyncio.run(run())
    assert first == second
    assert len(gateway.estimates) == 1


def test_distinct_paths_process_in_parallel(config, export_dir):
    gateway = SlowGateway()
    coordinator = IngestionCoordinator(gateway, config)
    paths = []
    for n in range(3):
        path = export_dir / f"E-{n}.ems"
        path.write_bytes(f"H|E-{n}\n".encode())
        paths.append(path)

    async def run():
        return await asyncio.gather(*(coordinator.process_estimate_file(p) for p in paths))

    results = asyncio.run(run())
    assert all(results)
    assert len(gateway.estimates) == 3


def test_images_are_uploaded_and_bad_images_skipped(config, export_dir, sample_bytes):
    path = export_dir / "ACME-1004.ems"
    path.write_bytes(sample_bytes)
    _png(export_dir / "ACME-1004.png")
    _png(export_dir / "ACME-1004_2.png")
    (export_dir / "ACME-1004_3.jpg").write_bytes(b"not really a jpeg")
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)

    estimate_id = asyncio.run(coordinator.process_estimate_file(path))

    assert estimate_id is not None
    uploaded = sorted(i["file_name"] for i in gateway.images.values())
    assert uploaded == ["ACME-1004.png", "ACME-1004_2.png"]
    assert all(i["estimate_id"] == estimate_id for i in gateway.images.values())
    assert all(i["image_type"] == "damage" for i in gateway.images.values())
    stats = coordinator.stats()
    assert stats["images_uploaded"] == 2
    assert stats["images_failed"] == 1
    assert stats["completed"] == 1


def test_upload_failure_fails_estimate_after_siblings_finish(config, export_dir, sample_bytes):
    path = export_dir / "ACME-1009.ems"
    path.write_bytes(sample_bytes)
    _png(export_dir / "ACME-1009.png")
    _png(export_dir / "ACME-1009_1.png")
    _png(export_dir / "ACME-1009_2.png")
    gateway = BrokenUploadGateway()
    coordinator = IngestionCoordinator(gateway, config)

    assert asyncio.run(coordinator.process_estimate_file(path)) is None

    uploaded = sorted(i["file_name"] for i in gateway.images.values())
    assert uploaded == ["ACME-1009.png", "ACME-1009_2.png"]
    assert coordinator.stats()["failed"] == 1
    sidecar = next(config.errors_path.glob("*_ACME-1009.ems.error.log"))
    assert "ImageUploadError" in sidecar.read_text()
    assert "bucket rejected upload" in gateway.logs[-1].error_details[0]["message"]


def test_image_processing_can_be_disabled(config, export_dir, sample_bytes):
    config.enable_image_processing = False
    path = export_dir / "ACME-1005.ems"
    path.write_bytes(sample_bytes)
    _png(export_dir / "ACME-1005.png")
    gateway = MemoryGateway()

    asyncio.run(IngestionCoordinator(gateway, config).process_estimate_file(path))
    assert gateway.images == {}


def test_late_image_resolves_to_existing_estimate(config, export_dir, sample_bytes):
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)
    path = export_dir / "ACME-1006.ems"
    path.write_bytes(sample_bytes)

    async def run():
        estimate_id = await coordinator.process_estimate_file(path)
        _png(export_dir / "ACME-1006_4.png")
        image_id = await coordinator.handle_image_event(export_dir / "ACME-1006_4.png")
        _png(export_dir / "stray.png")
        stray = await coordinator.handle_image_event(export_dir / "stray.png")
        return estimate_id, image_id, stray

    estimate_id, image_id, stray = asyncio.run(run())
    assert gateway.images[image_id]["estimate_id"] == estimate_id
    assert stray is None
    assert coordinator.stats()["images_unassociated"] == 1


def test_failed_estimate_lookup_is_contained_to_the_image(config, export_dir):
    class LookupFailsGateway(MemoryGateway):
        async def find_recent_estimate_by_file_name_substring(self, needle):
            raise ConnectionError("connection reset")

    gateway = LookupFailsGateway()
    coordinator = IngestionCoordinator(gateway, config)
    image = export_dir / "ACME-1010_1.png"
    _png(image)

    assert asyncio.run(coordinator.handle_image_event(image)) is None
    stats = coordinator.stats()
    assert stats["images_failed"] == 1
    assert stats["images_unassociated"] == 0
    assert stats["images_in_flight"] == 0
    assert gateway.images == {}


def test_stored_images_are_not_uploaded_again(config, export_dir, sample_bytes):
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)
    _png(export_dir / "ACME-1011.png")

    async def run():
        ids = []
        for _ in range(2):
            path = export_dir / "ACME-1011.ems"
            path.write_bytes(sample_bytes)
            ids.append(await coordinator.process_estimate_file(path))
        late = await coordinator.handle_image_event(export_dir / "ACME-1011.png")
        return ids, late

    (first, second), late = asyncio.run(run())
    assert first == second
    assert late is None
    assert [i["file_name"] for i in gateway.images.values()] == ["ACME-1011.png"]
    stats = coordinator.stats()
    assert stats["images_uploaded"] == 1
    assert stats["images_already_stored"] == 2
    assert stats["completed"] == 2


def test_image_uploads_are_tracked_apart_from_estimates(config, export_dir, sample_bytes):
    class StatsRecordingGateway(MemoryGateway):
        async def upload_image(self, data, estimate_id, kind, file_name, source_path=""):
            seen.append(coordinator.stats())
            return await super().upload_image(data, estimate_id, kind, file_name, source_path)

    seen = []
    gateway = StatsRecordingGateway()
    coordinator = IngestionCoordinator(gateway, config)
    path = export_dir / "ACME-1012.ems"
    path.write_bytes(sample_bytes)
    _png(export_dir / "ACME-1012.png")

    asyncio.run(coordinator.process_estimate_file(path))

    assert seen[0]["in_flight"] == 1
    assert seen[0]["images_in_flight"] == 1
    final = coordinator.stats()
    assert (final["in_flight"], final["images_in_flight"]) == (0, 0)


def test_parsing_runs_off_the_event_loop_thread(config, export_dir, sample_bytes):
    class ThreadRecordingAssembler(EstimateAssembler):
        def parse_file(self, path):
            threads.append(threading.current_thread())
            return super().parse_file(path)

    threads = []
    path = export_dir / "ACME-1013.ems"
    path.write_bytes(sample_bytes)
    coordinator = IngestionCoordinator(MemoryGateway(), config, assembler=ThreadRecordingAssembler())

    assert asyncio.run(coordinator.process_estimate_file(path)) is not None
    assert threads and threads[0] is not threading.main_thread()


def test_removed_event_clears_registry(config, export_dir):
    coordinator = IngestionCoordinator(MemoryGateway(), config)
    path = export_dir / "gone.ems"
    coordinator.registry.try_acquire(coordinator.key(path))

    coordinator.handle_removed(path)

    assert len(coordinator.registry) == 0
    assert coordinator.stats()["completed"] == 0


def test_dry_run_leaves_files_in_place(config, export_dir, sample_bytes):
    path = export_dir / "ACME-1007.ems"
    path.write_bytes(sample_bytes)
    coordinator = IngestionCoordinator(MemoryGateway(), config, relocate=False)

    asyncio.run(coordinator.process_estimate_file(path))
    assert path.exists()
    assert not config.processed_path.exists()


def test_event_waits_for_stable_size(config, export_dir, sample_bytes):
    config.stability_seconds = 0.05
    path = export_dir / "ACME-1008.ems"
    path.write_bytes(b"H|EST-")
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)

    async def run():
        task = asyncio.create_task(coordinator.handle_estimate_event(path))
        await asyncio.sleep(0.02)
        path.write_bytes(sample_bytes)
        return await task

    estimate_id = asyncio.run(run())
    assert gateway.estimates[estimate_id]["estimate_number"] == "EST-1001"


def test_event_for_vanished_file_is_skipped(config, export_dir):
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)
    assert asyncio.run(coordinator.handle_estimate_event(export_dir / "never.ems")) is None
    assert gateway.logs == []


# ── watcher ──────────────────────────────────────────────────

def test_watcher_ignores_dotfiles_and_output_areas(config, export_dir):
    watcher = EstimateWatcher(IngestionCoordinator(MemoryGateway(), config), config)
    assert watcher.is_ignored(export_dir / ".hidden.ems")
    assert watcher.is_ignored(export_dir / ".cache" / "a.ems")
    assert watcher.is_ignored(config.errors_path / "x.ems")
    assert watcher.is_ignored(config.processed_path / "x.ems")
    assert not watcher.is_ignored(export_dir / "shop" / "a.EMS")
    assert watcher.kind_of(export_dir / "a.EMS") == "estimate"
    assert watcher.kind_of(export_dir / "a.Jpeg") == "image"
    assert watcher.kind_of(export_dir / "a.txt") is None


def test_watcher_backfills_existing_files_on_start(config, export_dir, sample_bytes):
    (export_dir / "nested").mkdir()
    (export_dir / "nested" / "OLD-1.EMS").write_bytes(sample_bytes)
    (export_dir / ".tmp.ems").write_bytes(sample_bytes)
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)
    watcher = EstimateWatcher(coordinator, config)

    async def run():
        await watcher.start()
        await watcher.stop()

    asyncio.run(run())
    assert coordinator.stats()["completed"] == 1
    assert (export_dir / ".tmp.ems").exists()
    assert len(list(config.processed_path.glob("*_OLD-1.EMS"))) == 1


def test_watcher_picks_up_new_files(config, export_dir, sample_bytes):
    gateway = MemoryGateway()
    coordinator = IngestionCoordinator(gateway, config)
    watcher = EstimateWatcher(coordinator, config)

    async def run():
        await watcher.start()
        try:
            (export_dir / "LIVE-1.ems").write_bytes(sample_bytes)
            for _ in range(200):
                if coordinator.stats()["completed"]:
                    break
                await asyncio.sleep(0.05)
        finally:
            await watcher.stop()

    asyncio.run(run())
    assert coordinator.stats()["completed"] == 1
    assert len(gateway.estimates) == 1


# ── helpers ──────────────────────────────────────────────────

def test_timestamped_name_sorts_chronologically():
    early = timestamped_name("a.ems", datetime(2024, 3, 1, 9, 5, 7, 123000, tzinfo=timezone.utc))
    late = timestamped_name("a.ems", datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone.utc))
    assert early == "2024-03-01T09-05-07-123Z_a.ems"
    assert early < late


def test_find_files(tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "one.EMS").write_text("H|1")
    (tmp_path / "two.ems").write_text("H|2")
    (tmp_path / ".three.ems").write_text("H|3")
    (tmp_path / "skip").mkdir()
    (tmp_path / "skip" / "four.ems").write_text("H|4")
    found = find_files(tmp_path, [".ems"], exclude=[tmp_path / "skip"])
    assert [p.name for p in found] == ["one.EMS", "two.ems"]
