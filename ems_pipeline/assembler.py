"""
EMS Pipeline — Estimate assembler
══════════════════════════════════
Folds every line of an EMS file through the line parser into one Estimate,
then runs two deterministic passes:

  1. totals reconciliation  explicit totals record wins, line-item sums fill
                            whatever it left unset; sums always land in
                            metadata.calculated_totals
  2. normalization          make/model casing, operation vocabulary

Only a failure to read the file escapes parse_file(). Everything else is
recorded per line in metadata.parsing_errors.
"""
import hashlib
import logging
from pathlib import Path
from typing import Union

from .lines import (
    ParsedLine, RecordTag, normalize_make, normalize_model,
    normalize_operation, parse_line,
)
from .models import Estimate, EstimateMetadata, ParseError

log = logging.getLogger("ems.assembler")


# Estimate attribute each recognised tag writes to
SECTION_SLOTS = {
    RecordTag.HEADER: "header",
    RecordTag.VEHICLE: "vehicle",
    RecordTag.INSURANCE: "insurance",
    RecordTag.TOTALS: "totals",
    RecordTag.ADJUSTER: "adjuster",
    RecordTag.LINE_ITEM: "line_items",
    RecordTag.PART: "parts",
    RecordTag.NOTE: "notes",
    RecordTag.SUPPLEMENT: "supplements",
    RecordTag.DAMAGE: "damage_areas",
    RecordTag.REPAIR: "repair_procedures",
}


def fingerprint(content: bytes) -> str:
    """Stable content hash used as the idempotent upsert identity."""
    return hashlib.sha256(content).hexdigest()


class EstimateAssembler:

    def parse_file(self, path: Union[str, Path]) -> Estimate:
        path = Path(path)
        log.info(f"Parsing EMS file: {path.name}")
        content = path.read_bytes()
        estimate = self.parse_bytes(content, source_file=path.name)
        log.info(
            f"Parsed {path.name}: {len(estimate.line_items)} line items, "
            f"{len(estimate.metadata.parsing_errors)} parse errors"
        )
        return estimate

    def parse_bytes(self, content: bytes, source_file: str = "") -> Estimate:
        text = content.decode("utf-8", errors="replace")
        lines = [line.strip() for line in text.splitlines() if line.strip()]

        estimate = Estimate(metadata=EstimateMetadata(
            source_file=source_file,
            fingerprint=fingerprint(content),
            total_lines=len(lines),
        ))

        for number, line in enumerate(lines, 1):
            try:
                parsed = parse_line(line, position=len(estimate.line_items) + 1)
                self.apply(estimate, parsed)
            except Exception as e:
                log.warning(f"Error parsing line {number} of {source_file or '<bytes>'}: {e}")
                estimate.metadata.parsing_errors.append(
                    ParseError(line=number, content=line, error=str(e))
                )

        self.reconcile_totals(estimate)
        self.normalize(estimate)
        return estimate

    @staticmethod
    def apply(estimate: Estimate, parsed: ParsedLine):
        """Singleton sections overwrite their slot; repeatable ones append."""
        tag, record = parsed.tag, parsed.record
        if tag is RecordTag.UNKNOWN:
            return
        slot = SECTION_SLOTS[tag]
        if tag.repeatable:
            getattr(estimate, slot).append(record)
        else:
            setattr(estimate, slot, record)

    @staticmethod
    def reconcile_totals(estimate: Estimate):
        labor = sum(item.labor_cost for item in estimate.line_items)
        parts = sum(item.part_cost for item in estimate.line_items)
        total = sum(item.total_cost for item in estimate.line_items)
        estimate.metadata.calculated_totals = {
            "labor_total": labor,
            "parts_total": parts,
            "total_cost": total,
        }

        explicit = estimate.totals
        if explicit is None:
            estimate.labor_total = labor
            estimate.parts_total = parts
            estimate.total_cost = total
            estimate.tax_total = 0.0
            return

        estimate.labor_total = labor if explicit.labor_total is None else explicit.labor_total
        estimate.parts_total = parts if explicit.parts_total is None else explicit.parts_total
        estimate.total_cost = total if explicit.total_cost is None else explicit.total_cost
        estimate.tax_total = explicit.tax_total or 0.0

    @staticmethod
    def normalize(estimate: Estimate):
        vehicle = estimate.vehicle
        if vehicle.make:
            vehicle.make = normalize_make(vehicle.make)
        if vehicle.model:
            vehicle.model = normalize_model(vehicle.model)
        for item in estimate.line_items:
            item.operation_type = normalize_operation(item.operation_type)
