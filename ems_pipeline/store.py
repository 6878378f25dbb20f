"""
EMS Pipeline — Persistence gateway
═══════════════════════════════════
Everything the pipeline stores goes through a Gateway:

  upsert_estimate                          match by estimate number OR fingerprint,
                                           replace line items, ignore known parts
  find_estimate_by_number_or_fingerprint
  find_recent_estimate_by_file_name_substring
  upload_image / attach_ocr
  append_processing_log                    append-only, never updated
  query_recent_stats

Two implementations:
  PostgresGateway   asyncpg pool; image bytes go to an object-storage bucket
                    over HTTP when STORAGE_URL is set, inline bytea otherwise
  MemoryGateway     in-process, used by dry-run back-fill and the tests
"""
import itertools
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Dict, Iterable, List, Optional

import asyncpg
import httpx

from .config import LocationInfo, PipelineConfig
from .models import Estimate, LineItem, OcrResult, ProcessingLogEntry, ProcessingStatus
from .reliability import retry_with_backoff

log = logging.getLogger("ems.store")

TRANSIENT_ERRORS = (
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
)

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".ems": "text/plain",
}


def mime_type(file_name: str) -> str:
    return MIME_TYPES.get(PurePath(file_name).suffix.lower(), "application/octet-stream")


def _json(value) -> str:
    return json.dumps(value, default=str)


# ============================================================
# Row mapping (shared by both gateways)
# ============================================================

def estimate_record(estimate: Estimate, location: LocationInfo) -> Dict:
    """Flatten an Estimate into the estimates table's columns."""
    header, vehicle = estimate.header, estimate.vehicle
    return {
        "vin": vehicle.vin,
        "claim_number": header.claim_number,
        "estimate_number": header.estimate_number,
        "year": vehicle.year,
        "make": vehicle.make,
        "model": vehicle.model,
        "trim_level": vehicle.trim_level,
        "mileage": vehicle.mileage,
        "drp_provider": header.drp_provider,
        "insurance_company": estimate.insurance.company,
        "adjuster_name": estimate.adjuster.name,
        "total_cost": estimate.total_cost,
        "labor_total": estimate.labor_total,
        "parts_total": estimate.parts_total,
        "tax_total": estimate.tax_total,
        "estimate_date": header.estimate_date,
        "completion_date": header.completion_date,
        "status": header.status or "imported",
        "vehicle_data": asdict(vehicle),
        "insurance_data": asdict(estimate.insurance),
        "adjuster_data": asdict(estimate.adjuster),
        "damage_assessment": {"areas": [asdict(d) for d in estimate.damage_areas]},
        "repair_procedures": [asdict(r) for r in estimate.repair_procedures],
        "notes": [asdict(n) for n in estimate.notes],
        "supplements": [asdict(s) for s in estimate.supplements],
        "metadata": asdict(estimate.metadata),
        "source_file": estimate.source_file,
        "file_hash": estimate.fingerprint,
        "shop_name": location.shop_name,
        "shop_id": location.shop_id,
        "shop_address": location.address,
        "shop_region": location.region,
        "computer_name": location.computer_name,
        "shop_timezone": location.timezone,
        "shop_contact": location.contact,
    }


JSON_COLUMNS = {
    "vehicle_data", "insurance_data", "adjuster_data", "damage_assessment",
    "repair_procedures", "notes", "supplements", "metadata",
}


def line_item_record(estimate_id: str, item: LineItem) -> Dict:
    return {"estimate_id": estimate_id, **asdict(item)}


def summarize_logs(rows: Iterable[Dict]) -> Dict:
    """
    Aggregate processing-log rows (newest first) into status counters.
    A file is in flight when its newest row in the window is 'processing'.
    """
    latest: Dict[str, str] = {}
    stats = {
        "total_files": 0, "successful": 0, "failed": 0, "in_flight": 0,
        "total_records": 0, "total_errors": 0,
    }
    for row in rows:
        status = row["processing_status"]
        latest.setdefault(row["file_name"], status)
        if status == ProcessingStatus.COMPLETED.value:
            stats["successful"] += 1
        elif status == ProcessingStatus.ERROR.value:
            stats["failed"] += 1
        stats["total_records"] += row.get("records_processed") or 0
        stats["total_errors"] += row.get("errors_count") or 0
    stats["total_files"] = len(latest)
    stats["in_flight"] = sum(1 for s in latest.values() if s == ProcessingStatus.PROCESSING.value)
    return stats


# ============================================================
# Gateway interface
# ============================================================

class Gateway(ABC):

    async def connect(self, bootstrap: bool = True):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def test_connection(self) -> bool: ...

    @abstractmethod
    async def upsert_estimate(self, estimate: Estimate) -> Dict: ...

    @abstractmethod
    async def find_estimate_by_number_or_fingerprint(
        self, estimate_number: str, fingerprint: str) -> Optional[Dict]: ...

    @abstractmethod
    async def find_recent_estimate_by_file_name_substring(self, needle: str) -> Optional[Dict]: ...

    @abstractmethod
    async def upload_image(self, data: bytes, estimate_id: str, kind: str,
                           file_name: str, source_path: str = "") -> Dict: ...

    @abstractmethod
    async def find_image(self, estimate_id: str, file_name: str, file_size: int) -> Optional[Dict]: ...

    @abstractmethod
    async def attach_ocr(self, image_id: str, result: OcrResult): ...

    @abstractmethod
    async def append_processing_log(self, entry: ProcessingLogEntry): ...

    @abstractmethod
    async def query_recent_stats(self, limit: int = 100) -> Dict: ...


# ============================================================
# Object storage (image bytes)
# ============================================================

class ImageStorage:
    """Bucket client for a storage REST endpoint (/storage/v1/object/...)."""

    def __init__(self, base_url: str, api_key: str, bucket: str, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}", "apikey": api_key},
        )

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{key}"

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        resp = await self.client.post(
            f"{self.base_url}/storage/v1/object/{self.bucket}/{key}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )
        resp.raise_for_status()
        return self.public_url(key)

    async def close(self):
        await self.client.aclose()


# ============================================================
# PostgreSQL
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS estimates (
    id                 UUID PRIMARY KEY,
    estimate_number    TEXT,
    claim_number       TEXT,
    vin                TEXT,
    year               INTEGER,
    make               TEXT,
    model              TEXT,
    trim_level         TEXT,
    mileage            INTEGER,
    drp_provider       TEXT,
    insurance_company  TEXT,
    adjuster_name      TEXT,
    labor_total        DOUBLE PRECISION,
    parts_total        DOUBLE PRECISION,
    tax_total          DOUBLE PRECISION,
    total_cost         DOUBLE PRECISION,
    estimate_date      DATE,
    completion_date    DATE,
    status             TEXT DEFAULT 'imported',
    vehicle_data       JSONB,
    insurance_data     JSONB,
    adjuster_data      JSONB,
    damage_assessment  JSONB,
    repair_procedures  JSONB,
    notes              JSONB,
    supplements        JSONB,
    metadata           JSONB,
    source_file        TEXT,
    file_hash          TEXT,
    shop_name          TEXT,
    shop_id            TEXT,
    shop_address       TEXT,
    shop_region        TEXT,
    shop_contact       TEXT,
    shop_timezone      TEXT,
    computer_name      TEXT,
    created_at         TIMESTAMPTZ DEFAULT now(),
    updated_at         TIMESTAMPTZ DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_estimates_number ON estimates (estimate_number);
CREATE INDEX IF NOT EXISTS idx_estimates_hash ON estimates (file_hash);

CREATE TABLE IF NOT EXISTS estimate_line_items (
    id                UUID PRIMARY KEY,
    estimate_id       UUID NOT NULL REFERENCES estimates (id) ON DELETE CASCADE,
    line_number       INTEGER,
    operation_type    TEXT,
    part_description  TEXT,
    part_number       TEXT,
    quantity          DOUBLE PRECISION,
    labor_hours       DOUBLE PRECISION,
    labor_rate        DOUBLE PRECISION,
    labor_cost        DOUBLE PRECISION,
    part_cost         DOUBLE PRECISION,
    total_cost        DOUBLE PRECISION,
    category          TEXT,
    subcategory       TEXT,
    notes             TEXT,
    created_at        TIMESTAMPTZ DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_line_items_estimate ON estimate_line_items (estimate_id);

CREATE TABLE IF NOT EXISTS parts (
    id                  UUID PRIMARY KEY,
    part_number         TEXT NOT NULL UNIQUE,
    part_name           TEXT,
    oem_number          TEXT,
    aftermarket_number  TEXT,
    list_price          DOUBLE PRECISION,
    cost                DOUBLE PRECISION,
    availability        TEXT,
    supplier            TEXT,
    category            TEXT,
    description         TEXT,
    created_at          TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS estimate_images (
    id              UUID PRIMARY KEY,
    estimate_id     UUID NOT NULL REFERENCES estimates (id) ON DELETE CASCADE,
    file_name       TEXT,
    file_path       TEXT,
    file_size       BIGINT,
    mime_type       TEXT,
    image_type      TEXT,
    storage_url     TEXT,
    content         BYTEA,
    metadata        JSONB,
    ocr_text        TEXT,
    ocr_confidence  DOUBLE PRECISION,
    ocr_data        JSONB,
    created_at      TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS processing_logs (
    id                  UUID PRIMARY KEY,
    file_name           TEXT NOT NULL,
    file_path           TEXT,
    processing_status   TEXT NOT NULL,
    records_processed   INTEGER DEFAULT 0,
    errors_count        INTEGER DEFAULT 0,
    error_details       JSONB,
    processing_time_ms  INTEGER,
    estimate_id         UUID,
    shop_name           TEXT,
    shop_id             TEXT,
    computer_name       TEXT,
    created_at          TIMESTAMPTZ DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_processing_logs_created ON processing_logs (created_at DESC);
"""


class PostgresGateway(Gateway):

    def __init__(self, database_url: str, location: Optional[LocationInfo] = None,
                 storage: Optional[ImageStorage] = None):
        self.database_url = database_url
        self.location = location or LocationInfo()
        self.storage = storage
        self.pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "PostgresGateway":
        storage = None
        if config.storage_url:
            storage = ImageStorage(
                config.storage_url, config.storage_key, config.storage_bucket,
                timeout=config.upload_timeout_seconds,
            )
        return cls(config.database_url, location=config.location, storage=storage)

    async def connect(self, bootstrap: bool = True):
        """Open the pool; with bootstrap, also create any missing tables."""
        if self.pool is None:
            log.info("Connecting to PostgreSQL...")
            self.pool = await asyncpg.create_pool(
                self.database_url, min_size=1, max_size=8, command_timeout=60
            )
            if bootstrap:
                await self.ensure_schema()

    async def ensure_schema(self):
        """Create the pipeline tables if they don't exist."""
        await self.pool.execute(SCHEMA_SQL)

    async def close(self):
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
        if self.storage is not None:
            await self.storage.close()

    async def test_connection(self) -> bool:
        try:
            await self.connect()
            await self.pool.fetchval("SELECT count(*) FROM estimates")
            log.info("Database connection test successful")
            return True
        except Exception as e:
            log.error(f"Database connection test failed: {e}")
            return False

    # ── estimates ────────────────────────────────────────────

    async def find_estimate_by_number_or_fingerprint(
            self, estimate_number: str, fingerprint: str, conn=None) -> Optional[Dict]:
        row = await (conn or self.pool).fetchrow("""
            SELECT id, estimate_number, file_hash, source_file
            FROM estimates
            WHERE ($1 <> '' AND estimate_number = $1) OR file_hash = $2
            ORDER BY created_at DESC
            LIMIT 1
        """, estimate_number or "", fingerprint)
        return dict(row) if row else None

    async def find_recent_estimate_by_file_name_substring(self, needle: str) -> Optional[Dict]:
        row = await self.pool.fetchrow("""
            SELECT id, estimate_number, source_file
            FROM estimates
            WHERE strpos(source_file, $1) > 0
            ORDER BY created_at DESC
            LIMIT 1
        """, needle)
        return dict(row) if row else None

    @retry_with_backoff(max_attempts=3, initial_delay=1.0, exceptions=TRANSIENT_ERRORS)
    async def upsert_estimate(self, estimate: Estimate) -> Dict:
        record = estimate_record(estimate, self.location)
        values = {k: (_json(v) if k in JSON_COLUMNS else v) for k, v in record.items()}
        lock_keys = sorted({k for k in (estimate.estimate_number, estimate.fingerprint) if k})

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for key in lock_keys:
                    await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)

                existing = await self.find_estimate_by_number_or_fingerprint(
                    estimate.estimate_number, estimate.fingerprint, conn=conn
                )
                if existing:
                    estimate_id = str(existing["id"])
                    log.info(f"Estimate already exists, updating: {estimate.estimate_number or estimate_id}")
                    await self._update_estimate(conn, estimate_id, values)
                    await conn.execute(
                        "DELETE FROM estimate_line_items WHERE estimate_id = $1",
                        uuid.UUID(estimate_id),
                    )
                    created = False
                else:
                    estimate_id = str(uuid.uuid4())
                    await self._insert_estimate(conn, estimate_id, values)
                    created = True

                await self._insert_line_items(conn, estimate_id, estimate.line_items)
                await self._insert_parts(conn, estimate)

        log.info(f"{'Inserted' if created else 'Updated'} estimate {estimate_id} "
                 f"({len(estimate.line_items)} line items)")
        return {"id": estimate_id, "created": created}

    async def _insert_estimate(self, conn, estimate_id: str, values: Dict):
        columns = list(values)
        placeholders = ", ".join(
            f"${i}::jsonb" if col in JSON_COLUMNS else f"${i}"
            for i, col in enumerate(columns, 2)
        )
        await conn.execute(
            f"INSERT INTO estimates (id, {', '.join(columns)}) VALUES ($1, {placeholders})",
            uuid.UUID(estimate_id), *values.values(),
        )

    async def _update_estimate(self, conn, estimate_id: str, values: Dict):
        columns = list(values)
        assignments = ", ".join(
            f"{col} = ${i}::jsonb" if col in JSON_COLUMNS else f"{col} = ${i}"
            for i, col in enumerate(columns, 2)
        )
        await conn.execute(
            f"UPDATE estimates SET {assignments}, updated_at = now() WHERE id = $1",
            uuid.UUID(estimate_id), *(values[c] for c in columns),
        )

    async def _insert_line_items(self, conn, estimate_id: str, items: List[LineItem]):
        if not items:
            return
        await conn.executemany("""
            INSERT INTO estimate_line_items
                (id, estimate_id, line_number, operation_type, part_description,
                 part_number, quantity, labor_hours, labor_rate, labor_cost,
                 part_cost, total_cost, category, subcategory, notes)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
        """, [
            (uuid.uuid4(), uuid.UUID(estimate_id), i.line_number, i.operation_type,
             i.part_description, i.part_number, i.quantity, i.labor_hours,
             i.labor_rate, i.labor_cost, i.part_cost, i.total_cost,
             i.category, i.subcategory, i.notes)
            for i in items
        ])

    async def _insert_parts(self, conn, estimate: Estimate):
        parts = [p for p in estimate.parts if p.part_number]
        if not parts:
            return
        await conn.executemany("""
            INSERT INTO parts
                (id, part_number, part_name, oem_number, aftermarket_number,
                 list_price, cost, availability, supplier, category, description)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (part_number) DO NOTHING
        """, [
            (uuid.uuid4(), p.part_number, p.part_name, p.oem_number,
             p.aftermarket_number, p.list_price, p.cost, p.availability,
             p.supplier, p.category, p.description)
            for p in parts
        ])

    # ── images ───────────────────────────────────────────────

    async def upload_image(self, data: bytes, estimate_id: str, kind: str,
                           file_name: str, source_path: str = "") -> Dict:
        image_id = uuid.uuid4()
        key = f"{estimate_id}/{image_id}{PurePath(file_name).suffix.lower()}"
        content_type = mime_type(file_name)

        storage_url, content = None, None
        if self.storage is not None:
            storage_url = await self.storage.upload(key, data, content_type)
        else:
            content = data

        await self.pool.execute("""
            INSERT INTO estimate_images
                (id, estimate_id, file_name, file_path, file_size, mime_type,
                 image_type, storage_url, content, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
        """,
            image_id, uuid.UUID(estimate_id), file_name, key, len(data),
            content_type, kind, storage_url, content,
            _json({"original_path": source_path,
                   "uploaded_at": datetime.now(timezone.utc).isoformat()}),
        )
        log.info(f"Uploaded image {file_name} → {key}")
        return {"id": str(image_id), "file_path": key, "storage_url": storage_url}

    async def find_image(self, estimate_id: str, file_name: str, file_size: int) -> Optional[Dict]:
        row = await self.pool.fetchrow("""
            SELECT id, file_path, storage_url FROM estimate_images
            WHERE estimate_id = $1 AND file_name = $2 AND file_size = $3
            LIMIT 1
        """, uuid.UUID(estimate_id), file_name, file_size)
        return dict(row) if row else None

    async def attach_ocr(self, image_id: str, result: OcrResult):
        await self.pool.execute("""
            UPDATE estimate_images
            SET ocr_text = $2, ocr_confidence = $3, ocr_data = $4::jsonb
            WHERE id = $1
        """, uuid.UUID(image_id), result.raw_text, result.confidence,
            _json(result.structured_data))

    # ── processing log ───────────────────────────────────────

    async def append_processing_log(self, entry: ProcessingLogEntry):
        await self.pool.execute("""
            INSERT INTO processing_logs
                (id, file_name, file_path, processing_status, records_processed,
                 errors_count, error_details, processing_time_ms, estimate_id,
                 shop_name, shop_id, computer_name, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12, $13)
        """,
            uuid.uuid4(), entry.file_name, entry.file_path, entry.status.value,
            entry.records_processed, entry.errors_count,
            _json(entry.error_details) if entry.error_details is not None else None,
            entry.processing_time_ms,
            uuid.UUID(entry.estimate_id) if entry.estimate_id else None,
            entry.shop_name, entry.shop_id, entry.computer_name, entry.created_at,
        )

    async def query_recent_stats(self, limit: int = 100) -> Dict:
        rows = await self.pool.fetch("""
            SELECT file_name, processing_status, records_processed, errors_count
            FROM processing_logs
            ORDER BY created_at DESC
            LIMIT $1
        """, limit)
        return summarize_logs(dict(r) for r in rows)


# ============================================================
# In-memory
# ============================================================

class MemoryGateway(Gateway):
    """Gateway kept in process memory; nothing survives the process."""

    def __init__(self, location: Optional[LocationInfo] = None):
        self.location = location or LocationInfo()
        self.estimates: Dict[str, Dict] = {}
        self.line_items: Dict[str, List[Dict]] = {}
        self.parts: Dict[str, Dict] = {}
        self.images: Dict[str, Dict] = {}
        self.logs: List[ProcessingLogEntry] = []
        self._sequence = itertools.count(1)

    async def test_connection(self) -> bool:
        return True

    async def find_estimate_by_number_or_fingerprint(
            self, estimate_number: str, fingerprint: str) -> Optional[Dict]:
        matches = [
            row for row in self.estimates.values()
            if (estimate_number and row["estimate_number"] == estimate_number)
            or row["file_hash"] == fingerprint
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: r["created_seq"])

    async def find_recent_estimate_by_file_name_substring(self, needle: str) -> Optional[Dict]:
        matches = [row for row in self.estimates.values() if needle in (row["source_file"] or "")]
        if not matches:
            return None
        return max(matches, key=lambda r: r["created_seq"])

    async def upsert_estimate(self, estimate: Estimate) -> Dict:
        # Nothing below suspends, so match-then-write is atomic on the loop
        record = estimate_record(estimate, self.location)
        existing = await self.find_estimate_by_number_or_fingerprint(
            estimate.estimate_number, estimate.fingerprint
        )
        if existing:
            estimate_id = existing["id"]
            existing.update(record)
            existing["updated_at"] = datetime.now(timezone.utc)
            created = False
        else:
            estimate_id = str(uuid.uuid4())
            self.estimates[estimate_id] = {
                "id": estimate_id, "created_seq": next(self._sequence),
                "created_at": datetime.now(timezone.utc), **record,
            }
            created = True

        self.line_items[estimate_id] = [
            line_item_record(estimate_id, item) for item in estimate.line_items
        ]
        for part in estimate.parts:
            if part.part_number:
                self.parts.setdefault(part.part_number, asdict(part))
        return {"id": estimate_id, "created": created}

    async def upload_image(self, data: bytes, estimate_id: str, kind: str,
                           file_name: str, source_path: str = "") -> Dict:
        image_id = str(uuid.uuid4())
        self.images[image_id] = {
            "id": image_id,
            "estimate_id": estimate_id,
            "file_name": file_name,
            "file_size": len(data),
            "mime_type": mime_type(file_name),
            "image_type": kind,
            "metadata": {"original_path": source_path},
            "ocr_text": None,
        }
        return {"id": image_id}

    async def find_image(self, estimate_id: str, file_name: str, file_size: int) -> Optional[Dict]:
        for image in self.images.values():
            if (image["estimate_id"], image["file_name"], image["file_size"]) == (
                    estimate_id, file_name, file_size):
                return image
        return None

    async def attach_ocr(self, image_id: str, result: OcrResult):
        image = self.images[image_id]
        image["ocr_text"] = result.raw_text
        image["ocr_confidence"] = result.confidence
        image["ocr_data"] = result.structured_data

    async def append_processing_log(self, entry: ProcessingLogEntry):
        self.logs.append(entry)

    async def query_recent_stats(self, limit: int = 100) -> Dict:
        recent = list(reversed(self.logs))[:limit]
        return summarize_logs({
            "file_name": e.file_name,
            "processing_status": e.status.value,
            "records_processed": e.records_processed,
            "errors_count": e.errors_count,
        } for e in recent)
