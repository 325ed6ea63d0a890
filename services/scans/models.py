"""Scan and validation-ledger domain types, plus conversion from store rows."""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from services.scans.schema_validation import MalformedRow, require_valid

UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
UNKNOWN_EXPERT = "Unknown Expert"
UNKNOWN_CLASSIFICATION = "Unknown"


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value.strip()))


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError as e:
            raise MalformedRow(f"bad timestamp: {value!r}") from e
    # naive timestamps from the store are UTC
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def format_timestamp(dt: datetime) -> str:
    return parse_timestamp(dt).isoformat()


class ScanVariant(str, Enum):
    LEAF_DISEASE = "leaf_disease"
    FRUIT_MATURITY = "fruit_maturity"

    @property
    def table(self) -> str:
        return _VARIANT_TABLES[self]

    @property
    def classification_field(self) -> str:
        return "disease_detected" if self is ScanVariant.LEAF_DISEASE else "ripeness_stage"

    @classmethod
    def from_table(cls, table: str) -> "ScanVariant":
        for variant, name in _VARIANT_TABLES.items():
            if name == table:
                return variant
        raise ValueError(f"not a scan table: {table!r}")


_VARIANT_TABLES = {
    ScanVariant.LEAF_DISEASE: "leaf_disease_scans",
    ScanVariant.FRUIT_MATURITY: "fruit_ripeness_scans",
}


class ScanStatus(str, Enum):
    PENDING_VALIDATION = "Pending Validation"
    VALIDATED = "Validated"
    CORRECTED = "Corrected"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "ScanStatus":
        s = str(value or "").strip()
        if s == "Pending":
            return cls.PENDING_VALIDATION
        for status in cls:
            if status.value == s:
                return status
        return cls.UNKNOWN


class RecordStatus(str, Enum):
    VALIDATED = "Validated"
    CORRECTED = "Corrected"


@dataclass(frozen=True)
class Expert:
    id: str
    display_name: str = UNKNOWN_EXPERT

    @property
    def name_for_ledger(self) -> str:
        return (self.display_name or "").strip() or UNKNOWN_EXPERT


@dataclass(frozen=True)
class Scan:
    id: int
    uuid: str
    status: ScanStatus
    created_at: datetime
    updated_at: datetime
    farmer_ref: Optional[str] = None
    confidence: Optional[float] = None
    expert_comment: Optional[str] = None
    expert_validation: Optional[str] = None

    variant = ScanVariant.LEAF_DISEASE

    @property
    def classification(self) -> str:
        return ""

    @property
    def recommendation(self) -> Optional[str]:
        return None

    def with_status(self, status: ScanStatus, updated_at: Optional[datetime] = None, **changes: Any) -> "Scan":
        return replace(self, status=status, updated_at=updated_at or self.updated_at, **changes)


@dataclass(frozen=True)
class LeafDiseaseScan(Scan):
    disease_detected: str = ""
    solution: Optional[str] = None
    recommended_products: Optional[str] = None

    variant = ScanVariant.LEAF_DISEASE

    @property
    def classification(self) -> str:
        return self.disease_detected

    @property
    def recommendation(self) -> Optional[str]:
        return self.recommended_products


@dataclass(frozen=True)
class FruitMaturityScan(Scan):
    ripeness_stage: str = ""
    harvest_recommendation: Optional[str] = None

    variant = ScanVariant.FRUIT_MATURITY

    @property
    def classification(self) -> str:
        return self.ripeness_stage

    @property
    def recommendation(self) -> Optional[str]:
        return self.harvest_recommendation


@dataclass(frozen=True)
class NewValidationRecord:
    scan_uuid: str
    scan_variant: Optional[ScanVariant]
    expert_id: str
    expert_name: str
    ai_prediction: str
    expert_validation: str
    status: RecordStatus
    validated_at: datetime
    comment: str = ""

    def __post_init__(self) -> None:
        if self.status is RecordStatus.CORRECTED and not self.expert_validation.strip():
            raise ValueError("a corrected record needs a non-empty expert_validation")


@dataclass(frozen=True)
class ValidationRecord(NewValidationRecord):
    id: int = 0


def _confidence(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if 0.0 <= f <= 1.0 else None


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def scan_from_row(row: Dict[str, Any], variant: Optional[ScanVariant] = None) -> Scan:
    require_valid(row, "scan_row")
    kind = ScanVariant(row["scan_type"]) if row.get("scan_type") else variant
    if kind is None:
        raise MalformedRow("scan_row: cannot tell leaf from fruit (no scan_type)")

    common = dict(
        id=int(row["id"]),
        uuid=str(row["scan_uuid"]).strip(),
        status=ScanStatus.parse(row.get("status")),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        farmer_ref=row.get("farmer_id"),
        confidence=_confidence(row.get("confidence")),
        expert_comment=row.get("expert_comment"),
        expert_validation=row.get("expert_validation"),
    )
    if kind is ScanVariant.LEAF_DISEASE:
        return LeafDiseaseScan(
            **common,
            disease_detected=_text(row.get("disease_detected")),
            solution=row.get("solution"),
            recommended_products=row.get("recommendation"),
        )
    return FruitMaturityScan(
        **common,
        ripeness_stage=_text(row.get("ripeness_stage")),
        harvest_recommendation=row.get("harvest_recommendation"),
    )


def scan_to_row(scan: Scan) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "id": scan.id,
        "scan_uuid": scan.uuid,
        "scan_type": scan.variant.value,
        "status": scan.status.value,
        "farmer_id": scan.farmer_ref,
        "created_at": format_timestamp(scan.created_at),
        "updated_at": format_timestamp(scan.updated_at),
        "confidence": scan.confidence,
        "expert_comment": scan.expert_comment,
        "expert_validation": scan.expert_validation,
    }
    if isinstance(scan, LeafDiseaseScan):
        row.update(
            disease_detected=scan.disease_detected,
            solution=scan.solution,
            recommendation=scan.recommended_products,
        )
    elif isinstance(scan, FruitMaturityScan):
        row.update(
            ripeness_stage=scan.ripeness_stage,
            harvest_recommendation=scan.harvest_recommendation,
        )
    return row


def record_from_row(row: Dict[str, Any]) -> ValidationRecord:
    require_valid(row, "validation_record")
    scan_type = row.get("scan_type")
    return ValidationRecord(
        id=int(row["id"]),
        scan_uuid=str(row["scan_id"]).strip(),
        scan_variant=ScanVariant(scan_type) if scan_type else None,
        expert_id=str(row["expert_id"]).strip(),
        expert_name=_text(row.get("expert_name")) or UNKNOWN_EXPERT,
        ai_prediction=_text(row.get("ai_prediction")),
        expert_validation=_text(row.get("expert_validation")),
        comment=_text(row.get("expert_comment")),
        status=RecordStatus(row["status"]),
        validated_at=parse_timestamp(row["validated_at"]),
    )


def record_to_row(record: NewValidationRecord) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "scan_id": record.scan_uuid,
        "scan_type": record.scan_variant.value if record.scan_variant else None,
        "expert_id": record.expert_id,
        "expert_name": record.expert_name,
        "ai_prediction": record.ai_prediction,
        "expert_validation": record.expert_validation,
        "expert_comment": record.comment,
        "status": record.status.value,
        "validated_at": format_timestamp(record.validated_at),
    }
    if isinstance(record, ValidationRecord):
        row["id"] = record.id
    return row
