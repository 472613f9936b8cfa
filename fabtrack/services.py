"""Service layer implementing the manufacturing progress and quality gate."""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager, ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, List, Optional, Protocol, TypeVar, Union
from uuid import uuid4

from .concurrency import AssemblyLocks
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
    as_utc,
    utcnow,
)
from .registry import required_checks
from .repository import ConcurrencyConflictError, InMemoryStore, RecordNotFoundError
from .results import EngineError, ErrorKind, Result
from .settings import EngineOptions

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _registry_position(check: QualityCheck) -> int:
    order = required_checks(check.for_step)
    return order.index(check.check_type) if check.check_type in order else len(order)


class Store(Protocol):
    """What the engine needs from persistence."""

    assemblies: Any
    progress: Any
    quality_checks: Any
    ncrs: Any
    step_history: Any
    coatings: Any
    numbering_lock: Any

    def atomic(self) -> AbstractContextManager[None]:
        ...


@dataclass(slots=True)
class ProgressReport:
    """Read-only projection of everything known about one assembly."""

    assembly: Assembly
    progress: ProgressState
    quality_checks: List[QualityCheck]
    step_history: List[StepHistoryEntry]
    ncrs: List[NonComplianceRecord]
    coatings: List[OutsourcedCoatingRecord]
    quality_status: str
    coating_overdue: bool
    open_ncr_count: int = field(init=False)

    def __post_init__(self) -> None:
        self.open_ncr_count = sum(1 for ncr in self.ncrs if not ncr.status.is_closed)


class ProgressEngine:
    """Facade that exposes the progress and quality-gate use-cases.

    Every mutating operation returns a :class:`Result`. Expected refusals
    (missing records, blocked gates, wrong step) come back as failures; only
    infrastructure errors are raised.
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        *,
        options: Optional[EngineOptions] = None,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[AssemblyLocks] = None,
    ) -> None:
        self.store = store or InMemoryStore()
        self.options = options or EngineOptions()
        self._clock = clock or utcnow
        self._locks = locks or AssemblyLocks()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def _execute(
        self,
        assembly_id: str,
        action: Callable[[], T],
        *,
        operation: str,
        numbering: bool = False,
    ) -> Result[T]:
        """Run ``action`` as one unit of work while holding the assembly lock.

        Optimistic concurrency conflicts restart the unit of work up to
        ``options.max_retries`` times.
        With ``numbering`` the store-wide NCR numbering lock is taken as well,
        so engines sharing a store never hand out the same number.
        """

        attempts = max(self.options.max_retries, 0) + 1
        with self._locks.hold(assembly_id):
            for attempt in range(1, attempts + 1):
                try:
                    with ExitStack() as stack:
                        if numbering:
                            stack.enter_context(self.store.numbering_lock)
                        stack.enter_context(self.store.atomic())
                        value = action()
                    return Result.success(value)
                except EngineError as exc:
                    logger.warning(
                        "%s refused for assembly %s: %s (%s)",
                        operation,
                        assembly_id,
                        exc.message,
                        exc.kind.value,
                    )
                    return Result.failure(exc.kind, exc.message)
                except ConcurrencyConflictError as exc:
                    logger.debug(
                        "%s for assembly %s hit a conflict on attempt %d/%d: %s",
                        operation,
                        assembly_id,
                        attempt,
                        attempts,
                        exc,
                    )
        return Result.failure(
            ErrorKind.CONCURRENCY_CONFLICT,
            f"Assembly {assembly_id!r} was modified concurrently, retry the request",
        )

    @staticmethod
    def _require_actor(actor: Optional[str]) -> str:
        if actor is None or not actor.strip():
            raise EngineError(ErrorKind.INVALID_INPUT, "An acting user is required")
        return actor.strip()

    def _load_assembly(self, assembly_id: str) -> Assembly:
        try:
            return self.store.assemblies.get(assembly_id)
        except RecordNotFoundError as exc:
            raise EngineError(
                ErrorKind.NOT_FOUND, f"Assembly {assembly_id!r} not found"
            ) from exc

    def _load_progress(self, assembly_id: str) -> ProgressState:
        try:
            return self.store.progress.get(assembly_id)
        except RecordNotFoundError as exc:
            raise EngineError(
                ErrorKind.NOT_FOUND,
                f"No progress tracking found for assembly {assembly_id!r}",
            ) from exc

    # ------------------------------------------------------------------
    # Master data
    # ------------------------------------------------------------------
    def register_assembly(
        self,
        mark: str,
        *,
        description: str = "",
        quantity: int = 1,
        weight_kg: Optional[Decimal] = None,
        assembly_id: Optional[str] = None,
    ) -> Assembly:
        if not mark.strip():
            raise ValueError("An assembly needs a mark")
        if quantity < 1:
            raise ValueError("Assembly quantity must be at least 1")
        assembly = Assembly(
            id=assembly_id or str(uuid4()),
            mark=mark.strip(),
            description=description,
            quantity=quantity,
            weight_kg=weight_kg,
            created_at=self._clock(),
        )
        self.store.assemblies.add(assembly.id, assembly)
        return assembly

    def get_assembly(self, assembly_id: str) -> Optional[Assembly]:
        try:
            return self.store.assemblies.get(assembly_id)
        except RecordNotFoundError:
            return None

    def _sync_assembly(
        self, assembly_id: str, step: ManufacturingStep, now: datetime
    ) -> None:
        assembly = self._load_assembly(assembly_id)
        assembly.current_step = step
        assembly.progress_percentage = step.progress_percentage
        if step == ManufacturingStep.ASSEMBLED and assembly.manufacturing_started_at is None:
            assembly.manufacturing_started_at = now
        if step == ManufacturingStep.DELIVERED:
            assembly.manufacturing_completed_at = now
        self.store.assemblies.upsert(assembly.id, assembly)

    # ------------------------------------------------------------------
    # Progress state machine
    # ------------------------------------------------------------------
    def initialize(self, assembly_id: str, actor: str) -> Result[ProgressState]:
        """Start tracking an assembly at NotStarted. Repeated calls are no-ops."""

        def action() -> ProgressState:
            user = self._require_actor(actor)
            self._load_assembly(assembly_id)
            if assembly_id in self.store.progress:
                return self.store.progress.get(assembly_id)
            now = self._clock()
            progress = ProgressState(
                id=str(uuid4()),
                assembly_id=assembly_id,
                updated_by=user,
                current_step_started_at=now,
                created_at=now,
                updated_at=now,
            )
            self.store.progress.add(assembly_id, progress)
            self._instantiate_required_checks(progress, ManufacturingStep.NOT_STARTED)
            logger.info("Initialized progress tracking for assembly %s", assembly_id)
            return progress

        return self._execute(assembly_id, action, operation="initialize")

    def get_progress(self, assembly_id: str) -> Optional[ProgressState]:
        try:
            return self.store.progress.get(assembly_id)
        except RecordNotFoundError:
            return None

    def advance_to_next_step(
        self, assembly_id: str, actor: str, notes: Optional[str] = None
    ) -> Result[ProgressState]:
        return self._execute(
            assembly_id,
            lambda: self._advance(assembly_id, actor, notes),
            operation="advance",
        )

    def advance_to(
        self,
        assembly_id: str,
        target_step: ManufacturingStep,
        actor: str,
        notes: Optional[str] = None,
    ) -> Result[ProgressState]:
        """Advance only if ``target_step`` is the canonical successor."""

        return self._execute(
            assembly_id,
            lambda: self._advance(assembly_id, actor, notes, target=target_step),
            operation="advance",
        )

    def _advance(
        self,
        assembly_id: str,
        actor: str,
        notes: Optional[str],
        *,
        target: Optional[ManufacturingStep] = None,
    ) -> ProgressState:
        user = self._require_actor(actor)
        progress = self._load_progress(assembly_id)
        current = progress.current_step
        next_step = current.successor
        if next_step is None:
            raise EngineError(
                ErrorKind.ALREADY_TERMINAL,
                f"Assembly {assembly_id!r} is already at the final step",
            )
        if target is not None and target != next_step:
            raise EngineError(
                ErrorKind.INVALID_PROGRESSION,
                f"Invalid progression from {current.label} to {target.label}",
            )
        if progress.is_awaiting_coating_return:
            raise EngineError(
                ErrorKind.COATING_OUTSTANDING,
                "Coating is outsourced; record the return to complete this step",
            )
        self._ensure_gate_open(progress)

        now = self._clock()
        entry = StepHistoryEntry(
            id=str(uuid4()),
            progress_id=progress.id,
            step=current,
            started_at=progress.current_step_started_at or now,
            completed_at=now,
            updated_by=user,
            notes=notes,
        )
        self.store.step_history.add(entry.id, entry)

        progress.previous_step = current
        progress.current_step = next_step
        progress.current_step_started_at = now
        progress.current_step_completed_at = None
        progress.updated_by = user
        progress.updated_at = now
        progress.notes = notes
        self.store.progress.update(assembly_id, progress)

        self._instantiate_required_checks(progress, next_step)
        self._sync_assembly(assembly_id, next_step, now)
        logger.info(
            "Advanced assembly %s from %s to %s by %s",
            assembly_id,
            current.name,
            next_step.name,
            user,
        )
        return progress

    def _ensure_gate_open(self, progress: ProgressState) -> None:
        step = progress.current_step
        outstanding = [
            check
            for check in self._checks_for_progress(progress.id, step)
            if check.is_required and not check.status.clears_gate
        ]
        if outstanding:
            names = ", ".join(check.check_type.value for check in outstanding)
            raise EngineError(
                ErrorKind.QUALITY_GATE_BLOCKED,
                f"Cannot advance from {step.label}: required checks not cleared ({names})",
            )
        blocking = [
            ncr for ncr in self.ncrs_for(progress.assembly_id) if ncr.blocks_progress
        ]
        if blocking:
            numbers = ", ".join(sorted(ncr.ncr_number for ncr in blocking))
            raise EngineError(
                ErrorKind.CRITICAL_NCR_BLOCKED,
                f"Cannot advance due to {len(blocking)} open critical NCR(s): {numbers}",
            )

    def complete_current_step(
        self, assembly_id: str, actor: str, notes: Optional[str] = None
    ) -> Result[ProgressState]:
        """Mark the current step as worked off; advancing is a separate call."""

        def action() -> ProgressState:
            user = self._require_actor(actor)
            progress = self._load_progress(assembly_id)
            now = self._clock()
            progress.current_step_completed_at = now
            progress.updated_by = user
            progress.updated_at = now
            if notes:
                progress.notes = notes
            self.store.progress.update(assembly_id, progress)
            logger.info(
                "Completed step %s for assembly %s by %s",
                progress.current_step.name,
                assembly_id,
                user,
            )
            return progress

        return self._execute(assembly_id, action, operation="complete-step")

    def assemblies_at_step(self, step: ManufacturingStep) -> List[ProgressState]:
        states = self.store.progress.find(lambda progress: progress.current_step == step)
        states.sort(key=lambda progress: (progress.current_step_started_at, progress.assembly_id))
        return states

    # ------------------------------------------------------------------
    # Step history
    # ------------------------------------------------------------------
    def step_history(self, assembly_id: str) -> List[StepHistoryEntry]:
        progress = self.get_progress(assembly_id)
        if progress is None:
            return []
        entries = self.store.step_history.find(
            lambda entry: entry.progress_id == progress.id
        )
        entries.sort(key=lambda entry: (entry.started_at, int(entry.step)))
        return entries

    # ------------------------------------------------------------------
    # Quality checks
    # ------------------------------------------------------------------
    def _instantiate_required_checks(
        self, progress: ProgressState, step: ManufacturingStep
    ) -> List[QualityCheck]:
        now = self._clock()
        checks: List[QualityCheck] = []
        for check_type in required_checks(step):
            check = QualityCheck(
                id=str(uuid4()),
                progress_id=progress.id,
                assembly_id=progress.assembly_id,
                check_type=check_type,
                for_step=step,
                created_at=now,
            )
            self.store.quality_checks.add(check.id, check)
            checks.append(check)
        return checks

    def _checks_for_progress(
        self, progress_id: str, step: Optional[ManufacturingStep] = None
    ) -> List[QualityCheck]:
        checks = self.store.quality_checks.find(
            lambda check: check.progress_id == progress_id
            and (step is None or check.for_step == step)
        )
        checks.sort(
            key=lambda check: (
                int(check.for_step),
                not check.is_required,
                _registry_position(check),
                check.created_at,
            )
        )
        return checks

    def checks_for(
        self, assembly_id: str, step: Optional[ManufacturingStep] = None
    ) -> List[QualityCheck]:
        progress = self.get_progress(assembly_id)
        if progress is None:
            return []
        return self._checks_for_progress(progress.id, step)

    def can_advance(
        self, assembly_id: str, step: Optional[ManufacturingStep] = None
    ) -> bool:
        """True when every required check for ``step`` is Passed or FailedAccepted.

        ``step`` defaults to the assembly's current step. Non-required checks
        never block.
        """

        progress = self.get_progress(assembly_id)
        if progress is None:
            return False
        step = progress.current_step if step is None else step
        return all(
            check.status.clears_gate
            for check in self._checks_for_progress(progress.id, step)
            if check.is_required
        )

    def perform_check(
        self,
        check_id: str,
        status: QualityCheckStatus,
        checked_by: str,
        *,
        results: Optional[str] = None,
        defects_found: Optional[str] = None,
        corrective_actions: Optional[str] = None,
    ) -> Result[QualityCheck]:
        """Record the outcome of a check; a failure opens an NCR."""

        try:
            assembly_id = self.store.quality_checks.get(check_id).assembly_id
        except RecordNotFoundError:
            return Result.failure(
                ErrorKind.NOT_FOUND, f"Quality check {check_id!r} not found"
            )

        def action() -> QualityCheck:
            user = self._require_actor(checked_by)
            if status == QualityCheckStatus.PENDING:
                raise EngineError(
                    ErrorKind.INVALID_INPUT, "A performed check cannot be set to Pending"
                )
            check = self.store.quality_checks.get(check_id)
            if (
                status == QualityCheckStatus.FAILED_ACCEPTED
                and check.status != QualityCheckStatus.FAILED
            ):
                raise EngineError(
                    ErrorKind.INVALID_INPUT,
                    f"Only a failed check can be accepted, check is {check.status.value}",
                )
            now = self._clock()
            check.status = status
            check.checked_by = user
            check.checked_at = now
            check.results = results
            check.defects_found = defects_found
            check.corrective_actions = corrective_actions
            self.store.quality_checks.update(check.id, check)
            if status == QualityCheckStatus.FAILED:
                self._open_ncr(
                    assembly_id,
                    step=check.for_step,
                    description=defects_found or "Quality check failed",
                    discovered_by=user,
                    severity=self.options.default_ncr_severity,
                    quality_check_id=check.id,
                    category=check.check_type.value,
                )
            logger.info(
                "Quality check %s (%s) recorded as %s by %s",
                check.id,
                check.check_type.value,
                status.value,
                user,
            )
            return check

        return self._execute(
            assembly_id,
            action,
            operation="perform-check",
            numbering=status == QualityCheckStatus.FAILED,
        )

    def add_optional_check(
        self, assembly_id: str, check_type: QualityCheckType, actor: str
    ) -> Result[QualityCheck]:
        """Add a non-blocking check to the current step."""

        def action() -> QualityCheck:
            self._require_actor(actor)
            progress = self._load_progress(assembly_id)
            check = QualityCheck(
                id=str(uuid4()),
                progress_id=progress.id,
                assembly_id=assembly_id,
                check_type=check_type,
                for_step=progress.current_step,
                is_required=False,
                created_at=self._clock(),
            )
            self.store.quality_checks.add(check.id, check)
            return check

        return self._execute(assembly_id, action, operation="add-check")

    @staticmethod
    def quality_status(
        progress: Optional[ProgressState], checks: List[QualityCheck]
    ) -> str:
        if progress is None or not checks:
            return "No checks"
        relevant = [check for check in checks if check.for_step == progress.current_step]
        if not relevant:
            return "No checks for step"
        failed = sum(1 for check in relevant if check.status == QualityCheckStatus.FAILED)
        pending = sum(1 for check in relevant if check.status == QualityCheckStatus.PENDING)
        if failed:
            return f"{failed} failed"
        if pending:
            return f"{pending} pending"
        return "All passed"

    # ------------------------------------------------------------------
    # Non-compliance records
    # ------------------------------------------------------------------
    def _next_ncr_number(self, year: int) -> str:
        prefix = f"{self.options.ncr_prefix}-{year}-"
        sequences = [
            int(ncr.ncr_number[len(prefix):])
            for ncr in self.store.ncrs.list()
            if ncr.ncr_number.startswith(prefix) and ncr.ncr_number[len(prefix):].isdigit()
        ]
        return f"{prefix}{max(sequences, default=0) + 1:04d}"

    def _open_ncr(
        self,
        assembly_id: str,
        *,
        step: ManufacturingStep,
        description: str,
        discovered_by: str,
        severity: NonComplianceSeverity,
        quality_check_id: Optional[str] = None,
        category: str = "",
        en1090_reference: Optional[str] = None,
        customer_notification_required: bool = False,
    ) -> NonComplianceRecord:
        now = self._clock()
        ncr = NonComplianceRecord(
            id=str(uuid4()),
            ncr_number=self._next_ncr_number(now.year),
            assembly_id=assembly_id,
            discovered_at_step=step,
            description=description,
            discovered_by=discovered_by,
            quality_check_id=quality_check_id,
            severity=severity,
            category=category,
            en1090_reference=en1090_reference,
            customer_notification_required=customer_notification_required,
            discovered_at=now,
            updated_at=now,
        )
        self.store.ncrs.add(ncr.id, ncr)
        logger.info(
            "Opened %s (%s) for assembly %s at %s",
            ncr.ncr_number,
            severity.value,
            assembly_id,
            step.name,
        )
        return ncr

    def open_ncr(
        self,
        assembly_id: str,
        step: ManufacturingStep,
        description: str,
        discovered_by: str,
        severity: Optional[NonComplianceSeverity] = None,
        *,
        quality_check_id: Optional[str] = None,
        category: str = "",
        en1090_reference: Optional[str] = None,
        customer_notification_required: bool = False,
    ) -> Result[NonComplianceRecord]:
        """Record an ad-hoc finding against an assembly."""

        def action() -> NonComplianceRecord:
            user = self._require_actor(discovered_by)
            if not description.strip():
                raise EngineError(ErrorKind.INVALID_INPUT, "An NCR needs a description")
            self._load_assembly(assembly_id)
            if quality_check_id is not None and quality_check_id not in self.store.quality_checks:
                raise EngineError(
                    ErrorKind.NOT_FOUND, f"Quality check {quality_check_id!r} not found"
                )
            return self._open_ncr(
                assembly_id,
                step=step,
                description=description.strip(),
                discovered_by=user,
                severity=severity or self.options.default_ncr_severity,
                quality_check_id=quality_check_id,
                category=category,
                en1090_reference=en1090_reference,
                customer_notification_required=customer_notification_required,
            )

        return self._execute(assembly_id, action, operation="open-ncr", numbering=True)

    def update_ncr(
        self,
        ncr_id: str,
        status: NonComplianceStatus,
        *,
        root_cause: Optional[str] = None,
        immediate_action: Optional[str] = None,
        preventive_action: Optional[str] = None,
        assigned_to: Optional[str] = None,
        target_resolution_date: Optional[datetime] = None,
        severity: Optional[NonComplianceSeverity] = None,
    ) -> Result[NonComplianceRecord]:
        """Move an NCR through its lifecycle. ``None`` keeps stored values."""

        try:
            assembly_id = self.store.ncrs.get(ncr_id).assembly_id
        except RecordNotFoundError:
            return Result.failure(
                ErrorKind.NOT_FOUND, f"Non-compliance record {ncr_id!r} not found"
            )

        def action() -> NonComplianceRecord:
            ncr = self.store.ncrs.get(ncr_id)
            now = self._clock()
            ncr.status = status
            ncr.root_cause = root_cause if root_cause is not None else ncr.root_cause
            ncr.immediate_action = (
                immediate_action if immediate_action is not None else ncr.immediate_action
            )
            ncr.preventive_action = (
                preventive_action if preventive_action is not None else ncr.preventive_action
            )
            ncr.assigned_to = assigned_to if assigned_to is not None else ncr.assigned_to
            if target_resolution_date is not None:
                ncr.target_resolution_date = as_utc(target_resolution_date)
            if severity is not None:
                ncr.severity = severity
            ncr.updated_at = now
            if status.is_closed:
                ncr.actual_resolution_date = now
            self.store.ncrs.update(ncr.id, ncr)
            logger.info("Updated %s to status %s", ncr.ncr_number, status.value)
            return ncr

        return self._execute(assembly_id, action, operation="update-ncr")

    def get_ncr(self, ncr_id: str) -> Optional[NonComplianceRecord]:
        try:
            return self.store.ncrs.get(ncr_id)
        except RecordNotFoundError:
            return None

    def ncrs_for(self, assembly_id: str) -> List[NonComplianceRecord]:
        ncrs = self.store.ncrs.find(lambda ncr: ncr.assembly_id == assembly_id)
        ncrs.sort(key=lambda ncr: ncr.ncr_number)
        return ncrs

    def list_open_ncrs(self) -> List[NonComplianceRecord]:
        ncrs = self.store.ncrs.find(lambda ncr: not ncr.status.is_closed)
        ncrs.sort(key=lambda ncr: (ncr.discovered_at, ncr.ncr_number), reverse=True)
        return ncrs

    # ------------------------------------------------------------------
    # Outsourced coating
    # ------------------------------------------------------------------
    def _active_coating(self, assembly_id: str) -> Optional[OutsourcedCoatingRecord]:
        active = self.store.coatings.find(
            lambda record: record.assembly_id == assembly_id and record.is_active
        )
        return active[0] if active else None

    def send_out_for_coating(
        self,
        assembly_id: str,
        supplier_id: str,
        expected_return_at: datetime,
        actor: str,
        *,
        coating_specification: Optional[str] = None,
        cost: Optional[Union[Decimal, float]] = None,
    ) -> Result[OutsourcedCoatingRecord]:
        def action() -> OutsourcedCoatingRecord:
            user = self._require_actor(actor)
            if not supplier_id or not str(supplier_id).strip():
                raise EngineError(ErrorKind.INVALID_INPUT, "A coating supplier is required")
            progress = self._load_progress(assembly_id)
            if progress.current_step != ManufacturingStep.READY_FOR_COATING:
                raise EngineError(
                    ErrorKind.WRONG_STEP,
                    f"Coating can only be outsourced from "
                    f"{ManufacturingStep.READY_FOR_COATING.label}, assembly is at "
                    f"{progress.current_step.label}",
                )
            if self._active_coating(assembly_id) is not None:
                raise EngineError(
                    ErrorKind.COATING_OUTSTANDING,
                    f"Assembly {assembly_id!r} is already out for coating",
                )
            now = self._clock()
            expected = as_utc(expected_return_at)
            progress.is_coating_outsourced = True
            progress.outsourced_coating_sent_at = now
            progress.outsourced_coating_expected_return_at = expected
            progress.outsourced_coating_actual_return_at = None
            progress.updated_by = user
            progress.updated_at = now
            self.store.progress.update(assembly_id, progress)
            record = OutsourcedCoatingRecord(
                id=str(uuid4()),
                assembly_id=assembly_id,
                supplier_id=str(supplier_id),
                sent_at=now,
                expected_return_at=expected,
                sent_by=user,
                coating_specification=coating_specification,
                cost=Decimal(str(cost)) if cost is not None else None,
            )
            self.store.coatings.add(record.id, record)
            logger.info(
                "Sent assembly %s to coating supplier %s, expected back %s",
                assembly_id,
                supplier_id,
                expected.isoformat(),
            )
            return record

        return self._execute(assembly_id, action, operation="send-out-coating")

    def record_coating_return(
        self, assembly_id: str, actor: str, notes: Optional[str] = None
    ) -> Result[ProgressState]:
        """Close the active coating record and advance to CoatingDone.

        The return and the advance commit together; if the quality gate
        refuses the advance, the record stays open.
        """

        def action() -> ProgressState:
            user = self._require_actor(actor)
            progress = self._load_progress(assembly_id)
            record = self._active_coating(assembly_id)
            if not progress.is_coating_outsourced or record is None:
                raise EngineError(
                    ErrorKind.NOT_FOUND,
                    f"Assembly {assembly_id!r} has no outsourced coating awaiting return",
                )
            now = self._clock()
            record.status = CoatingStatus.RETURNED
            record.actual_return_at = now
            record.received_by = user
            record.notes = notes
            self.store.coatings.update(record.id, record)
            progress.outsourced_coating_actual_return_at = now
            progress.updated_by = user
            progress.updated_at = now
            self.store.progress.update(assembly_id, progress)
            logger.info("Recorded coating return for assembly %s", assembly_id)
            return self._advance(assembly_id, user, notes)

        return self._execute(assembly_id, action, operation="record-coating-return")

    def coatings_for(self, assembly_id: str) -> List[OutsourcedCoatingRecord]:
        records = self.store.coatings.find(lambda record: record.assembly_id == assembly_id)
        records.sort(key=lambda record: record.sent_at)
        return records

    def ready_for_outsourced_coating(self) -> List[ProgressState]:
        return self.store.progress.find(
            lambda progress: progress.current_step == ManufacturingStep.READY_FOR_COATING
            and not progress.is_coating_outsourced
        )

    def awaiting_coating_return(self) -> List[ProgressState]:
        return self.store.progress.find(
            lambda progress: progress.is_awaiting_coating_return
        )

    @staticmethod
    def is_coating_overdue(progress: Optional[ProgressState], now: datetime) -> bool:
        if (
            progress is None
            or not progress.is_awaiting_coating_return
            or progress.outsourced_coating_expected_return_at is None
        ):
            return False
        return as_utc(now) > as_utc(progress.outsourced_coating_expected_return_at)

    def overdue_coatings(self, now: Optional[datetime] = None) -> List[ProgressState]:
        reference = now or self._clock()
        return [
            progress
            for progress in self.awaiting_coating_return()
            if self.is_coating_overdue(progress, reference)
        ]

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def progress_report(self, assembly_id: str) -> Result[ProgressReport]:
        assembly = self.get_assembly(assembly_id)
        if assembly is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"Assembly {assembly_id!r} not found")
        progress = self.get_progress(assembly_id)
        if progress is None:
            return Result.failure(
                ErrorKind.NOT_FOUND,
                f"No progress tracking found for assembly {assembly_id!r}",
            )
        checks = self._checks_for_progress(progress.id)
        return Result.success(
            ProgressReport(
                assembly=assembly,
                progress=progress,
                quality_checks=checks,
                step_history=self.step_history(assembly_id),
                ncrs=self.ncrs_for(assembly_id),
                coatings=self.coatings_for(assembly_id),
                quality_status=self.quality_status(progress, checks),
                coating_overdue=self.is_coating_overdue(progress, self._clock()),
            )
        )


__all__ = ["ProgressEngine", "ProgressReport", "Store"]
