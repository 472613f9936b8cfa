"""Core data structures for EN 1090 manufacturing progress tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional, assert_never


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ManufacturingStep(IntEnum):
    """Fixed, strictly ordered manufacturing steps of a fabricated assembly."""

    NOT_STARTED = 0
    ASSEMBLED = 1
    WELDED = 2
    READY_FOR_COATING = 3
    COATING_DONE = 4
    READY_FOR_DELIVERY = 5
    DELIVERED = 6

    @property
    def successor(self) -> Optional["ManufacturingStep"]:
        """The only step an assembly may move to from this one."""

        match self:
            case ManufacturingStep.NOT_STARTED:
                return ManufacturingStep.ASSEMBLED
            case ManufacturingStep.ASSEMBLED:
                return ManufacturingStep.WELDED
            case ManufacturingStep.WELDED:
                return ManufacturingStep.READY_FOR_COATING
            case ManufacturingStep.READY_FOR_COATING:
                return ManufacturingStep.COATING_DONE
            case ManufacturingStep.COATING_DONE:
                return ManufacturingStep.READY_FOR_DELIVERY
            case ManufacturingStep.READY_FOR_DELIVERY:
                return ManufacturingStep.DELIVERED
            case ManufacturingStep.DELIVERED:
                return None
            case _:
                assert_never(self)

    @property
    def predecessor(self) -> Optional["ManufacturingStep"]:
        match self:
            case ManufacturingStep.NOT_STARTED:
                return None
            case ManufacturingStep.ASSEMBLED:
                return ManufacturingStep.NOT_STARTED
            case ManufacturingStep.WELDED:
                return ManufacturingStep.ASSEMBLED
            case ManufacturingStep.READY_FOR_COATING:
                return ManufacturingStep.WELDED
            case ManufacturingStep.COATING_DONE:
                return ManufacturingStep.READY_FOR_COATING
            case ManufacturingStep.READY_FOR_DELIVERY:
                return ManufacturingStep.COATING_DONE
            case ManufacturingStep.DELIVERED:
                return ManufacturingStep.READY_FOR_DELIVERY
            case _:
                assert_never(self)

    @property
    def label(self) -> str:
        match self:
            case ManufacturingStep.NOT_STARTED:
                return "Not Started"
            case ManufacturingStep.ASSEMBLED:
                return "Assembled"
            case ManufacturingStep.WELDED:
                return "Welded"
            case ManufacturingStep.READY_FOR_COATING:
                return "Ready for Coating"
            case ManufacturingStep.COATING_DONE:
                return "Coating Done"
            case ManufacturingStep.READY_FOR_DELIVERY:
                return "Ready for Delivery"
            case ManufacturingStep.DELIVERED:
                return "Delivered"
            case _:
                assert_never(self)

    @property
    def progress_percentage(self) -> int:
        match self:
            case ManufacturingStep.NOT_STARTED:
                return 0
            case ManufacturingStep.ASSEMBLED:
                return 20
            case ManufacturingStep.WELDED:
                return 40
            case ManufacturingStep.READY_FOR_COATING:
                return 60
            case ManufacturingStep.COATING_DONE:
                return 80
            case ManufacturingStep.READY_FOR_DELIVERY:
                return 90
            case ManufacturingStep.DELIVERED:
                return 100
            case _:
                assert_never(self)

    @property
    def is_terminal(self) -> bool:
        return self.successor is None


class QualityCheckType(str, Enum):
    """Inspection types required along the EN 1090 workflow."""

    VISUAL_TESTING = "VisualTesting"
    QUALITY_ASSURANCE = "QualityAssurance"
    DIMENSIONAL_CHECK = "DimensionalCheck"
    WELD_QUALITY_CHECK = "WeldQualityCheck"
    COATING_QUALITY_CHECK = "CoatingQualityCheck"
    FINAL_INSPECTION = "FinalInspection"


class QualityCheckStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    PASSED = "Passed"
    FAILED = "Failed"
    FAILED_ACCEPTED = "FailedAccepted"

    @property
    def clears_gate(self) -> bool:
        return self in {QualityCheckStatus.PASSED, QualityCheckStatus.FAILED_ACCEPTED}


class NonComplianceSeverity(str, Enum):
    MINOR = "Minor"
    MAJOR = "Major"
    CRITICAL = "Critical"


class NonComplianceStatus(str, Enum):
    """Remediation lifecycle of a non-compliance record."""

    OPEN = "Open"
    UNDER_REVIEW = "UnderReview"
    CORRECTIVE_ACTION_IN_PROGRESS = "CorrectiveActionInProgress"
    AWAITING_VERIFICATION = "AwaitingVerification"
    CLOSED = "Closed"
    CLOSED_WITH_CONCESSION = "ClosedWithConcession"

    @property
    def is_closed(self) -> bool:
        return self in {
            NonComplianceStatus.CLOSED,
            NonComplianceStatus.CLOSED_WITH_CONCESSION,
        }


class CoatingStatus(str, Enum):
    SENT = "Sent"
    RETURNED = "Returned"


@dataclass(slots=True)
class Assembly:
    """A fabricated structural unit tracked through manufacturing."""

    id: str
    mark: str
    description: str = ""
    quantity: int = 1
    weight_kg: Optional[Decimal] = None
    current_step: ManufacturingStep = ManufacturingStep.NOT_STARTED
    progress_percentage: int = 0
    manufacturing_started_at: Optional[datetime] = None
    manufacturing_completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ProgressState:
    """Progress of one assembly through the manufacturing steps."""

    id: str
    assembly_id: str
    updated_by: str
    current_step: ManufacturingStep = ManufacturingStep.NOT_STARTED
    previous_step: Optional[ManufacturingStep] = None
    current_step_started_at: Optional[datetime] = None
    current_step_completed_at: Optional[datetime] = None
    is_coating_outsourced: bool = False
    outsourced_coating_sent_at: Optional[datetime] = None
    outsourced_coating_expected_return_at: Optional[datetime] = None
    outsourced_coating_actual_return_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def __post_init__(self) -> None:
        if (
            self.previous_step is not None
            and self.previous_step != self.current_step.predecessor
        ):
            raise ValueError(
                f"Previous step {self.previous_step.name} does not precede "
                f"{self.current_step.name}"
            )

    @property
    def is_awaiting_coating_return(self) -> bool:
        return (
            self.is_coating_outsourced
            and self.outsourced_coating_actual_return_at is None
        )


@dataclass(slots=True)
class QualityCheck:
    """A single inspection of an assembly for one manufacturing step."""

    id: str
    progress_id: str
    assembly_id: str
    check_type: QualityCheckType
    for_step: ManufacturingStep
    status: QualityCheckStatus = QualityCheckStatus.PENDING
    is_required: bool = True
    checked_by: Optional[str] = None
    checked_at: Optional[datetime] = None
    results: Optional[str] = None
    defects_found: Optional[str] = None
    corrective_actions: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0


@dataclass(slots=True)
class NonComplianceRecord:
    """A tracked deviation from requirements (NCR)."""

    id: str
    ncr_number: str
    assembly_id: str
    discovered_at_step: ManufacturingStep
    description: str
    discovered_by: str
    quality_check_id: Optional[str] = None
    severity: NonComplianceSeverity = NonComplianceSeverity.MAJOR
    status: NonComplianceStatus = NonComplianceStatus.OPEN
    category: str = ""
    root_cause: Optional[str] = None
    immediate_action: Optional[str] = None
    preventive_action: Optional[str] = None
    assigned_to: Optional[str] = None
    target_resolution_date: Optional[datetime] = None
    actual_resolution_date: Optional[datetime] = None
    customer_notification_required: bool = False
    en1090_reference: Optional[str] = None
    discovered_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def blocks_progress(self) -> bool:
        return (
            self.status == NonComplianceStatus.OPEN
            and self.severity == NonComplianceSeverity.CRITICAL
        )


@dataclass(slots=True, frozen=True)
class StepHistoryEntry:
    """Completed occupancy of one step. Never modified after it is written."""

    id: str
    progress_id: str
    step: ManufacturingStep
    started_at: datetime
    completed_at: datetime
    updated_by: str
    notes: Optional[str] = None

    @property
    def duration_hours(self) -> float:
        return (self.completed_at - self.started_at).total_seconds() / 3600


@dataclass(slots=True)
class OutsourcedCoatingRecord:
    """Coating delegated to a third-party supplier."""

    id: str
    assembly_id: str
    supplier_id: str
    sent_at: datetime
    expected_return_at: datetime
    sent_by: str
    status: CoatingStatus = CoatingStatus.SENT
    actual_return_at: Optional[datetime] = None
    received_by: Optional[str] = None
    coating_specification: Optional[str] = None
    cost: Optional[Decimal] = None
    notes: Optional[str] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == CoatingStatus.SENT


__all__ = [
    "utcnow",
    "as_utc",
    "ManufacturingStep",
    "QualityCheckType",
    "QualityCheckStatus",
    "NonComplianceSeverity",
    "NonComplianceStatus",
    "CoatingStatus",
    "Assembly",
    "ProgressState",
    "QualityCheck",
    "NonComplianceRecord",
    "StepHistoryEntry",
    "OutsourcedCoatingRecord",
]
