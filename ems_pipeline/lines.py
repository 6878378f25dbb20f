"""
EMS Pipeline — Line parser
═══════════════════════════
Pure mapping from one tagged, pipe-delimited EMS line to a typed record.
No I/O and no knowledge of the estimate being assembled.

    L|1|REP|Front Bumper|BMP-001|1|2.5|65|162.50|45.00|207.50|Exterior|Bumper|
    ^ tag   positional fields ...

Unknown tags map to RecordTag.UNKNOWN and yield no record.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .models import (
    AdjusterInfo, DamageArea, Header, InsuranceInfo, LineItem, Note,
    OperationType, Part, RepairProcedure, Supplement, Totals, VehicleInfo,
)

log = logging.getLogger("ems.parser")

DELIMITER = "|"


class RecordTag(Enum):
    HEADER = "H"
    VEHICLE = "V"
    INSURANCE = "I"
    LINE_ITEM = "L"
    PART = "P"
    TOTALS = "T"
    NOTE = "N"
    SUPPLEMENT = "S"
    ADJUSTER = "A"
    DAMAGE = "D"
    REPAIR = "R"
    UNKNOWN = "?"

    @classmethod
    def from_code(cls, code: str) -> "RecordTag":
        for tag in cls:
            if tag.value == code and tag is not cls.UNKNOWN:
                return tag
        return cls.UNKNOWN

    @property
    def repeatable(self) -> bool:
        return self in _REPEATABLE


_REPEATABLE = {
    RecordTag.LINE_ITEM, RecordTag.PART, RecordTag.NOTE,
    RecordTag.SUPPLEMENT, RecordTag.DAMAGE, RecordTag.REPAIR,
}


@dataclass
class ParsedLine:
    tag: RecordTag
    code: str
    record: Any = None


# ============================================================
# Controlled vocabularies
# ============================================================

OPERATION_MAP = {
    "R": OperationType.REPLACE.value,
    "REP": OperationType.REPAIR.value,
    "REF": OperationType.REFINISH.value,
    "I&R": OperationType.REMOVE_INSTALL.value,
    "O&A": OperationType.OVERHAUL_ADJUST.value,
    "SUPP": OperationType.SUPPLEMENT.value,
}

MAKE_MAP = {
    "CHEV": "Chevrolet",
    "FORD": "Ford",
    "TOYO": "Toyota",
    "HOND": "Honda",
    "NISS": "Nissan",
    "HYUN": "Hyundai",
    "SUBR": "Subaru",
    "MAZD": "Mazda",
    "BMW": "BMW",
    "MERC": "Mercedes-Benz",
    "AUDI": "Audi",
    "VOLK": "Volkswagen",
}


def normalize_operation(operation: str) -> str:
    """Abbreviation → canonical operation; unmapped values are lower-cased."""
    return OPERATION_MAP.get(operation.upper(), operation.lower())


def normalize_make(make: str) -> str:
    return MAKE_MAP.get(make.upper(), make)


def normalize_model(model: str) -> str:
    if not model:
        return model
    return model[0].upper() + model[1:].lower()


# ============================================================
# Field coercion
# ============================================================

DATE_PATTERNS = [
    (re.compile(r"(\d{2})/(\d{2})/(\d{4})"), "mdy"),  # MM/DD/YYYY
    (re.compile(r"(\d{4})-(\d{2})-(\d{2})"), "ymd"),  # YYYY-MM-DD
    (re.compile(r"(\d{2})-(\d{2})-(\d{4})"), "mdy"),  # MM-DD-YYYY
]


def parse_date(value: str) -> Optional[date]:
    """First matching pattern wins. Blank, unmatched or impossible dates give None."""
    if not value:
        return None
    for pattern, order in DATE_PATTERNS:
        m = pattern.search(value)
        if not m:
            continue
        g = m.groups()
        if order == "ymd":
            year, month, day = int(g[0]), int(g[1]), int(g[2])
        else:
            month, day, year = int(g[0]), int(g[1]), int(g[2])
        try:
            return date(year, month, day)
        except ValueError as e:
            log.warning(f"Ignoring invalid date {value!r}: {e}")
            return None
    return None


def to_float(value: str) -> Optional[float]:
    """Blank or malformed → None."""
    if not value:
        return None
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return None


def to_int(value: str) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        number = to_float(value)
        return int(number) if number is not None else None


def _money(value: str) -> float:
    number = to_float(value)
    return number if number is not None else 0.0


class _Fields:
    """Positional access that tolerates short lines."""

    def __init__(self, fields: List[str]):
        self._fields = fields

    def __getitem__(self, index: int) -> str:
        if index < len(self._fields):
            return self._fields[index].strip()
        return ""


# ============================================================
# Handlers, one per recognised tag
# ============================================================

def _header(f: _Fields, position: int) -> Header:
    return Header(
        estimate_number=f[1],
        claim_number=f[2],
        estimate_date=parse_date(f[3]),
        completion_date=parse_date(f[4]),
        status=f[5] or "imported",
        drp_provider=f[6],
    )


def _vehicle(f: _Fields, position: int) -> VehicleInfo:
    return VehicleInfo(
        vin=f[1],
        year=to_int(f[2]),
        make=f[3],
        model=f[4],
        trim_level=f[5],
        mileage=to_int(f[6]),
        color=f[7],
        body_style=f[8],
        engine_size=f[9],
        transmission=f[10],
    )


def _insurance(f: _Fields, position: int) -> InsuranceInfo:
    return InsuranceInfo(
        company=f[1],
        policy_number=f[2],
        claim_number=f[3],
        deductible=_money(f[4]),
        coverage=f[5],
    )


def _line_item(f: _Fields, position: int) -> LineItem:
    labor_cost = _money(f[8])
    part_cost = _money(f[9])
    total_cost = to_float(f[10])
    if total_cost is None:
        total_cost = labor_cost + part_cost
    quantity = to_float(f[5])
    return LineItem(
        line_number=to_int(f[1]) or position,
        operation_type=f[2] or OperationType.REPAIR.value,
        part_description=f[3],
        part_number=f[4],
        quantity=quantity if quantity else 1.0,
        labor_hours=_money(f[6]),
        labor_rate=_money(f[7]),
        labor_cost=labor_cost,
        part_cost=part_cost,
        total_cost=total_cost,
        category=f[11],
        subcategory=f[12],
        notes=f[13],
    )


def _part(f: _Fields, position: int) -> Part:
    return Part(
        part_number=f[1],
        part_name=f[2],
        oem_number=f[3],
        aftermarket_number=f[4],
        list_price=_money(f[5]),
        cost=_money(f[6]),
        availability=f[7],
        supplier=f[8],
        category=f[9],
        description=f[10],
    )


def _totals(f: _Fields, position: int) -> Totals:
    return Totals(
        labor_total=to_float(f[1]),
        parts_total=to_float(f[2]),
        sublet_total=to_float(f[3]),
        tax_total=to_float(f[4]),
        total_cost=to_float(f[5]),
        sales_tax=to_float(f[6]),
        grand_total=to_float(f[7]),
    )


def _note(f: _Fields, position: int) -> Note:
    return Note(type=f[1] or "general", text=f[2], timestamp=parse_date(f[3]), author=f[4])


def _supplement(f: _Fields, position: int) -> Supplement:
    return Supplement(
        supplement_number=f[1],
        date=parse_date(f[2]),
        reason=f[3],
        amount=_money(f[4]),
        status=f[5] or "pending",
    )


def _adjuster(f: _Fields, position: int) -> AdjusterInfo:
    return AdjusterInfo(name=f[1], phone=f[2], email=f[3], company=f[4])


def _damage(f: _Fields, position: int) -> DamageArea:
    return DamageArea(
        area=f[1],
        severity=f[2],
        description=f[3],
        operation=f[4] or OperationType.REPAIR.value,
    )


def _repair(f: _Fields, position: int) -> RepairProcedure:
    return RepairProcedure(
        procedure=f[1],
        description=f[2],
        labor_time=_money(f[3]),
        skill_level=f[4],
        refinish_included=f[5] == "Y",
    )


HANDLERS: Dict[RecordTag, Callable[[_Fields, int], Any]] = {
    RecordTag.HEADER: _header,
    RecordTag.VEHICLE: _vehicle,
    RecordTag.INSURANCE: _insurance,
    RecordTag.LINE_ITEM: _line_item,
    RecordTag.PART: _part,
    RecordTag.TOTALS: _totals,
    RecordTag.NOTE: _note,
    RecordTag.SUPPLEMENT: _supplement,
    RecordTag.ADJUSTER: _adjuster,
    RecordTag.DAMAGE: _damage,
    RecordTag.REPAIR: _repair,
}


def parse_line(line: str, position: int = 1) -> ParsedLine:
    """
    Map one trimmed line to a ParsedLine.

    `position` is the 1-based index a line item takes when its own line
    number is blank. Handler exceptions propagate to the caller.
    """
    fields = line.strip().split(DELIMITER)
    code = fields[0].strip()
    tag = RecordTag.from_code(code)
    if tag is RecordTag.UNKNOWN:
        log.debug(f"Unknown line type: {code!r}")
        return ParsedLine(tag=tag, code=code)
    return ParsedLine(tag=tag, code=code, record=HANDLERS[tag](_Fields(fields), position))
