"""
🚗 EMS Estimate Pipeline — Main Entry Point
════════════════════════════════════════════
Watches estimating-system export folders for EMS files, parses them into
estimates, stores them with their photos, and files the sources away.

Usage:
    python -m ems_pipeline watch                      # live watch until SIGINT/SIGTERM
    python -m ems_pipeline backfill                   # process existing files, then exit
    python -m ems_pipeline backfill --dry-run         # parse only, nothing stored or moved
    python -m ems_pipeline backfill --batch-size 25
    python -m ems_pipeline status                     # recent processing counters as JSON
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone

from .config import PipelineConfig
from .logs import log_shutdown, log_startup, log_stats, setup_logging
from .store import MemoryGateway, PostgresGateway
from .watcher import EstimateWatcher, IngestionCoordinator

log = logging.getLogger("ems.run")

STATS_WINDOW = 100


async def _check_backend(gateway) -> bool:
    log.info("Testing database connection...")
    if not await gateway.test_connection():
        log.error("✗ Cannot reach the database — refusing to start. Check DATABASE_URL.")
        return False
    log.info("✓ Database connection successful")
    return True


# ============================================================
# watch
# ============================================================

async def stats_loop(coordinator: IngestionCoordinator, watcher: EstimateWatcher,
                     interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            stats = await coordinator.gateway.query_recent_stats(STATS_WINDOW)
            local = coordinator.stats()
            log.info("📊 System status:")
            log.info(f"   File watcher:  {'active' if watcher.is_watching else 'inactive'}")
            log.info(f"   In flight:     {local['in_flight']} estimate(s), "
                     f"{local['images_in_flight']} image(s)")
            log.info(f"   This session:  {local['completed']} completed, {local['failed']} failed, "
                     f"{local['dropped_duplicates']} duplicate events dropped")
            log_stats(stats)
        except Exception as e:
            log.warning(f"Failed to get stats: {e}")


async def watch(config: PipelineConfig) -> int:
    gateway = PostgresGateway.from_config(config)
    if not await _check_backend(gateway):
        await gateway.close()
        return 1

    coordinator = IngestionCoordinator(gateway, config)
    watcher = EstimateWatcher(coordinator, config)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_signal(sig):
        log.info(f"Received {signal.Signals(sig).name} — shutting down")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    await watcher.start()
    stats_task = asyncio.create_task(stats_loop(coordinator, watcher, config.stats_interval_seconds))
    log.info("🎉 EMS pipeline is running and monitoring for files")

    try:
        await stop.wait()
    finally:
        stats_task.cancel()
        await watcher.stop()
        log_shutdown()
        log.info(f"Session totals: {json.dumps(coordinator.stats())}")
        await gateway.close()
    return 0


# ============================================================
# backfill
# ============================================================

async def backfill(config: PipelineConfig, dry_run: bool = False,
                   batch_size: int = 0) -> int:
    if dry_run:
        log.info("DRY RUN — nothing will be stored and no files will be moved")
        gateway = MemoryGateway(location=config.location)
    else:
        gateway = PostgresGateway.from_config(config)
        if not await _check_backend(gateway):
            await gateway.close()
            return 1

    coordinator = IngestionCoordinator(gateway, config, relocate=not dry_run)
    watcher = EstimateWatcher(coordinator, config)
    files = watcher.existing_files()
    log.info(f"Found {len(files)} existing EMS file(s)")

    batch_size = batch_size or config.batch_size
    total_batches = (len(files) + batch_size - 1) // batch_size
    try:
        for i in range(0, len(files), batch_size):
            batch = files[i:i + batch_size]
            log.info(f"Processing batch {i // batch_size + 1} of {total_batches} ({len(batch)} files)")
            await asyncio.gather(*(coordinator.process_estimate_file(p) for p in batch))

        local = coordinator.stats()
        log.info(f"✓ Back-fill complete: {local['completed']} completed, {local['failed']} failed")
        log_stats(await gateway.query_recent_stats(STATS_WINDOW))
    finally:
        await gateway.close()
    return 0


# ============================================================
# status
# ============================================================

async def status(config: PipelineConfig) -> int:
    gateway = PostgresGateway.from_config(config)
    try:
        await gateway.connect(bootstrap=False)
        stats = await gateway.query_recent_stats(STATS_WINDOW)
    except Exception as e:
        log.error(f"Status query failed: {e}")
        print(f"✗ Cannot read processing status from the database: {e}", file=sys.stderr)
        return 1
    finally:
        await gateway.close()

    print(json.dumps({
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "shop_name": config.location.shop_name,
        "computer_name": config.location.computer_name,
        "export_paths": [str(p) for p in config.export_paths],
        "window": STATS_WINDOW,
        "database": stats,
    }, indent=2))
    return 0


# ============================================================
# CLI
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ems-pipeline", description="EMS Estimate Pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("watch", help="Watch export folders until interrupted")

    bf = sub.add_parser("backfill", help="Process every existing EMS file, then exit")
    bf.add_argument("--dry-run", action="store_true",
                    help="Parse and report only; use an in-memory store and leave files in place")
    bf.add_argument("--batch-size", type=int, default=0,
                    help="Files processed concurrently per batch (default: EMS_BATCH_SIZE)")

    sub.add_parser("status", help="Print recent processing counters as JSON")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    needs_database = not (args.command == "backfill" and args.dry_run)
    try:
        config = PipelineConfig.from_env(require_database=needs_database)
    except RuntimeError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    if args.command == "status":
        config.log_to_file = False
    setup_logging(config)

    if args.command == "watch":
        log_startup(config, "watch")
        return asyncio.run(watch(config))
    if args.command == "backfill":
        log_startup(config, "backfill (dry run)" if args.dry_run else "backfill")
        return asyncio.run(backfill(config, dry_run=args.dry_run, batch_size=args.batch_size))
    return asyncio.run(status(config))


if __name__ == "__main__":
    sys.exit(main())
