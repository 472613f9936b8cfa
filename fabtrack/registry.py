"""Quality checks required on entering each manufacturing step.

The table is fixed by the EN 1090 execution class workflow and is not user
editable.
"""

from __future__ import annotations

from typing import Tuple, assert_never

from .domain import ManufacturingStep, QualityCheckType


def required_checks(step: ManufacturingStep) -> Tuple[QualityCheckType, ...]:
    """Return the check types that must clear before leaving ``step``."""

    match step:
        case ManufacturingStep.NOT_STARTED:
            return ()
        case ManufacturingStep.ASSEMBLED:
            return (
                QualityCheckType.VISUAL_TESTING,
                QualityCheckType.DIMENSIONAL_CHECK,
                QualityCheckType.QUALITY_ASSURANCE,
            )
        case ManufacturingStep.WELDED:
            return (
                QualityCheckType.VISUAL_TESTING,
                QualityCheckType.WELD_QUALITY_CHECK,
                QualityCheckType.QUALITY_ASSURANCE,
            )
        case ManufacturingStep.READY_FOR_COATING:
            return (
                QualityCheckType.VISUAL_TESTING,
                QualityCheckType.QUALITY_ASSURANCE,
            )
        case ManufacturingStep.COATING_DONE:
            return (
                QualityCheckType.VISUAL_TESTING,
                QualityCheckType.COATING_QUALITY_CHECK,
                QualityCheckType.QUALITY_ASSURANCE,
            )
        case ManufacturingStep.READY_FOR_DELIVERY:
            return (
                QualityCheckType.FINAL_INSPECTION,
                QualityCheckType.QUALITY_ASSURANCE,
            )
        case ManufacturingStep.DELIVERED:
            return ()
        case _:
            assert_never(step)


__all__ = ["required_checks"]
