"""
EMS Pipeline — Domain model
════════════════════════════
Plain dataclasses for one repair estimate and the records it carries.

  Estimate            aggregate root built by the assembler
  LineItem            owned by exactly one Estimate
  Part                shared catalog entry keyed by part number
  ProcessingLogEntry  append-only audit row, one per state transition
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class OperationType(str, Enum):
    """Canonical repair operation vocabulary."""
    REPLACE = "replace"
    REPAIR = "repair"
    REFINISH = "refinish"
    REMOVE_INSTALL = "remove_install"
    OVERHAUL_ADJUST = "overhaul_adjust"
    SUPPLEMENT = "supplement"


class ProcessingStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# ============================================================
# Estimate sub-records
# ============================================================

@dataclass
class Header:
    estimate_number: str = ""
    claim_number: str = ""
    estimate_date: Optional[date] = None
    completion_date: Optional[date] = None
    status: str = "imported"
    drp_provider: str = ""


@dataclass
class VehicleInfo:
    vin: str = ""
    year: Optional[int] = None
    make: str = ""
    model: str = ""
    trim_level: str = ""
    mileage: Optional[int] = None
    color: str = ""
    body_style: str = ""
    engine_size: str = ""
    transmission: str = ""


@dataclass
class InsuranceInfo:
    company: str = ""
    policy_number: str = ""
    claim_number: str = ""
    deductible: float = 0.0
    coverage: str = ""


@dataclass
class AdjusterInfo:
    name: str = ""
    phone: str = ""
    email: str = ""
    company: str = ""


@dataclass
class Totals:
    """Explicit totals record. None means the field was blank in the file."""
    labor_total: Optional[float] = None
    parts_total: Optional[float] = None
    sublet_total: Optional[float] = None
    tax_total: Optional[float] = None
    total_cost: Optional[float] = None
    sales_tax: Optional[float] = None
    grand_total: Optional[float] = None


@dataclass
class LineItem:
    line_number: int
    operation_type: str = OperationType.REPAIR.value
    part_description: str = ""
    part_number: str = ""
    quantity: float = 1.0
    labor_hours: float = 0.0
    labor_rate: float = 0.0
    labor_cost: float = 0.0
    part_cost: float = 0.0
    total_cost: float = 0.0
    category: str = ""
    subcategory: str = ""
    notes: str = ""


@dataclass
class Part:
    part_number: str
    part_name: str = ""
    oem_number: str = ""
    aftermarket_number: str = ""
    list_price: float = 0.0
    cost: float = 0.0
    availability: str = ""
    supplier: str = ""
    category: str = ""
    description: str = ""


@dataclass
class Note:
    type: str = "general"
    text: str = ""
    timestamp: Optional[date] = None
    author: str = ""


@dataclass
class Supplement:
    supplement_number: str = ""
    date: Optional[date] = None
    reason: str = ""
    amount: float = 0.0
    status: str = "pending"


@dataclass
class DamageArea:
    area: str = ""
    severity: str = ""
    description: str = ""
    operation: str = OperationType.REPAIR.value


@dataclass
class RepairProcedure:
    procedure: str = ""
    description: str = ""
    labor_time: float = 0.0
    skill_level: str = ""
    refinish_included: bool = False


@dataclass
class ParseError:
    line: int
    content: str
    error: str


@dataclass
class EstimateMetadata:
    source_file: str = ""
    fingerprint: str = ""
    parsed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    total_lines: int = 0
    parsing_errors: List[ParseError] = field(default_factory=list)
    calculated_totals: Dict[str, float] = field(default_factory=dict)


# ============================================================
# Aggregate root
# ============================================================

@dataclass
class Estimate:
    header: Header = field(default_factory=Header)
    vehicle: VehicleInfo = field(default_factory=VehicleInfo)
    insurance: InsuranceInfo = field(default_factory=InsuranceInfo)
    adjuster: AdjusterInfo = field(default_factory=AdjusterInfo)
    totals: Optional[Totals] = None
    line_items: List[LineItem] = field(default_factory=list)
    parts: List[Part] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
    supplements: List[Supplement] = field(default_factory=list)
    damage_areas: List[DamageArea] = field(default_factory=list)
    repair_procedures: List[RepairProcedure] = field(default_factory=list)
    metadata: EstimateMetadata = field(default_factory=EstimateMetadata)

    # Reconciled estimate-level totals (see assembler.reconcile_totals)
    labor_total: float = 0.0
    parts_total: float = 0.0
    tax_total: float = 0.0
    total_cost: float = 0.0

    @property
    def estimate_number(self) -> str:
        return self.header.estimate_number

    @property
    def fingerprint(self) -> str:
        return self.metadata.fingerprint

    @property
    def source_file(self) -> str:
        return self.metadata.source_file


@dataclass
class ProcessingLogEntry:
    file_name: str
    status: ProcessingStatus
    file_path: str = ""
    records_processed: int = 0
    errors_count: int = 0
    error_details: Optional[List[Dict]] = None
    processing_time_ms: int = 0
    estimate_id: Optional[str] = None
    shop_name: str = ""
    shop_id: str = ""
    computer_name: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class OcrResult:
    raw_text: str
    confidence: float
    structured_data: Dict[str, List[str]] = field(default_factory=dict)
