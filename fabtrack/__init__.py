"""Manufacturing progress and quality-gate engine for steel fabrication.

This package tracks fabricated assemblies through the EN 1090 manufacturing
steps, enforces the quality checks required before each step may be left,
records non-compliances and handles outsourced coating.
"""

from .domain import (
    Assembly,
    CoatingStatus,
    ManufacturingStep,
    NonComplianceRecord,
    NonComplianceSeverity,
    NonComplianceStatus,
    OutsourcedCoatingRecord,
    ProgressState,
    QualityCheck,
    QualityCheckStatus,
    QualityCheckType,
    StepHistoryEntry,
)
from .registry import required_checks
from .results import EngineError, ErrorKind, Result
from .services import ProgressEngine, ProgressReport

__all__ = [
    "Assembly",
    "CoatingStatus",
    "ManufacturingStep",
    "NonComplianceRecord",
    "NonComplianceSeverity",
    "NonComplianceStatus",
    "OutsourcedCoatingRecord",
    "ProgressState",
    "QualityCheck",
    "QualityCheckStatus",
    "QualityCheckType",
    "StepHistoryEntry",
    "required_checks",
    "EngineError",
    "ErrorKind",
    "Result",
    "ProgressEngine",
    "ProgressReport",
]
