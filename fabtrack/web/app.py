"""FastAPI-based web interface for the progress engine."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field

from ..domain import (
    ManufacturingStep,
    NonComplianceSeverity,
    NonComplianceStatus,
    QualityCheckStatus,
    QualityCheckType,
)
from ..gating import Capability, Denied, FeatureGate, FeatureKeys, StaticFeatureGate
from ..repository import InMemoryStore
from ..results import ErrorKind, Result
from ..services import ProgressEngine
from ..settings import Settings, configure_logging
from ..storage import EngineDatabase

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONCURRENCY_CONFLICT: 409,
    ErrorKind.INVALID_INPUT: 422,
}


class ActorRequest(BaseModel):
    actor: str
    notes: Optional[str] = None


class AdvanceRequest(ActorRequest):
    target_step: Optional[str] = None


class RegisterAssemblyRequest(BaseModel):
    mark: str
    description: str = ""
    quantity: int = Field(default=1, ge=1)
    weight_kg: Optional[Decimal] = None


class OutsourceCoatingRequest(BaseModel):
    actor: str
    supplier_id: str
    expected_return_at: datetime
    coating_specification: Optional[str] = None
    cost: Optional[Decimal] = None


class QualityCheckRequest(BaseModel):
    status: QualityCheckStatus
    checked_by: str
    results: Optional[str] = None
    defects_found: Optional[str] = None
    corrective_actions: Optional[str] = None


class OptionalCheckRequest(BaseModel):
    actor: str
    check_type: QualityCheckType


class OpenNcrRequest(BaseModel):
    description: str
    discovered_by: str
    step: Optional[str] = None
    severity: Optional[NonComplianceSeverity] = None
    quality_check_id: Optional[str] = None
    category: str = ""
    en1090_reference: Optional[str] = None
    customer_notification_required: bool = False


class UpdateNcrRequest(BaseModel):
    status: NonComplianceStatus
    root_cause: Optional[str] = None
    immediate_action: Optional[str] = None
    preventive_action: Optional[str] = None
    assigned_to: Optional[str] = None
    target_resolution_date: Optional[datetime] = None
    severity: Optional[NonComplianceSeverity] = None


def parse_step(value: str) -> ManufacturingStep:
    """Accept a step by name (``ready_for_coating``) or number (``3``)."""

    candidate = value.strip()
    if candidate.isdigit():
        try:
            return ManufacturingStep(int(candidate))
        except ValueError:
            pass
    else:
        normalized = candidate.upper().replace("-", "_").replace(" ", "_")
        if normalized in ManufacturingStep.__members__:
            return ManufacturingStep[normalized]
    raise HTTPException(status_code=422, detail=f"Unknown manufacturing step {value!r}")


def respond(result: Result) -> Any:
    if result.error is None:
        return jsonable_encoder(result.value)
    raise HTTPException(
        status_code=STATUS_CODES.get(result.error.kind, 400),
        detail={"kind": result.error.kind.value, "message": result.error.message},
    )


def require_feature(feature_key: str) -> Callable[..., Capability]:
    def dependency(
        request: Request, x_tenant_id: Optional[str] = Header(default=None)
    ) -> Capability:
        gate: FeatureGate = request.app.state.feature_gate
        capability = gate.check(x_tenant_id, feature_key)
        if isinstance(capability, Denied):
            logger.info("Denied %s for tenant %s: %s", feature_key, x_tenant_id, capability.reason)
            raise HTTPException(status_code=403, detail=capability.reason)
        return capability

    return dependency


progress_feature = Depends(require_feature(FeatureKeys.MANUFACTURING_PROGRESS))
compliance_feature = Depends(require_feature(FeatureKeys.EN1090_COMPLIANCE))
outsourcing_feature = Depends(require_feature(FeatureKeys.OUTSOURCING_MANAGEMENT))


def build_engine(settings: Settings) -> ProgressEngine:
    store = (
        InMemoryStore()
        if settings.uses_memory_store
        else EngineDatabase(settings.database_path)
    )
    return ProgressEngine(store, options=settings.engine)


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[ProgressEngine] = None,
    feature_gate: Optional[FeatureGate] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    engine = engine or build_engine(settings)
    if settings.demo_data:
        ensure_demo_data(engine)

    app = FastAPI(title="EN 1090 Manufacturing Progress")
    app.state.engine = engine
    app.state.feature_gate = feature_gate or StaticFeatureGate(settings.enabled_features)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        engine.store.close()

    def get_engine(request: Request) -> ProgressEngine:
        return request.app.state.engine

    @app.get("/")
    async def board(request: Request):
        service = get_engine(request)
        columns = []
        for step in ManufacturingStep:
            states = service.assemblies_at_step(step)
            assemblies = [service.get_assembly(state.assembly_id) for state in states]
            columns.append(
                {
                    "step": step,
                    "entries": [
                        {
                            "assembly": assembly,
                            "progress": state,
                            "quality_status": service.quality_status(
                                state, service.checks_for(state.assembly_id)
                            ),
                        }
                        for assembly, state in zip(assemblies, states)
                        if assembly is not None
                    ],
                }
            )
        return templates.TemplateResponse(
            "board.html",
            {
                "request": request,
                "columns": columns,
                "open_ncrs": service.list_open_ncrs(),
                "awaiting_coating": service.awaiting_coating_return(),
                "overdue_coating": service.overdue_coatings(),
            },
        )

    # ------------------------------------------------------------------
    # Assemblies and progress
    # ------------------------------------------------------------------
    @app.post("/assemblies", dependencies=[progress_feature])
    def register_assembly(payload: RegisterAssemblyRequest, request: Request):
        try:
            assembly = get_engine(request).register_assembly(
                payload.mark,
                description=payload.description,
                quantity=payload.quantity,
                weight_kg=payload.weight_kg,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return jsonable_encoder(assembly)

    @app.get("/assemblies/{assembly_id}/progress", dependencies=[progress_feature])
    def get_progress(assembly_id: str, request: Request):
        progress = get_engine(request).get_progress(assembly_id)
        if progress is None:
            raise HTTPException(
                status_code=404,
                detail=f"No progress tracking found for assembly {assembly_id}",
            )
        return jsonable_encoder(progress)

    @app.get("/assemblies/{assembly_id}/report", dependencies=[progress_feature])
    def get_report(assembly_id: str, request: Request):
        return respond(get_engine(request).progress_report(assembly_id))

    @app.post("/assemblies/{assembly_id}/initialize", dependencies=[progress_feature])
    def initialize(assembly_id: str, payload: ActorRequest, request: Request):
        return respond(get_engine(request).initialize(assembly_id, payload.actor))

    @app.post("/assemblies/{assembly_id}/advance", dependencies=[progress_feature])
    def advance(assembly_id: str, payload: AdvanceRequest, request: Request):
        service = get_engine(request)
        if payload.target_step is not None:
            result = service.advance_to(
                assembly_id, parse_step(payload.target_step), payload.actor, payload.notes
            )
        else:
            result = service.advance_to_next_step(assembly_id, payload.actor, payload.notes)
        return respond(result)

    @app.post("/assemblies/{assembly_id}/complete-step", dependencies=[progress_feature])
    def complete_step(assembly_id: str, payload: ActorRequest, request: Request):
        return respond(
            get_engine(request).complete_current_step(
                assembly_id, payload.actor, payload.notes
            )
        )

    @app.get("/assemblies/{assembly_id}/history", dependencies=[progress_feature])
    def history(assembly_id: str, request: Request):
        return jsonable_encoder(get_engine(request).step_history(assembly_id))

    @app.get("/steps/{step}/assemblies", dependencies=[progress_feature])
    def assemblies_at_step(step: str, request: Request):
        return jsonable_encoder(get_engine(request).assemblies_at_step(parse_step(step)))

    # ------------------------------------------------------------------
    # Quality checks and non-compliance records
    # ------------------------------------------------------------------
    @app.get("/assemblies/{assembly_id}/checks", dependencies=[compliance_feature])
    def list_checks(assembly_id: str, request: Request, step: Optional[str] = None):
        service = get_engine(request)
        return jsonable_encoder(
            service.checks_for(assembly_id, parse_step(step) if step else None)
        )

    @app.post("/assemblies/{assembly_id}/checks", dependencies=[compliance_feature])
    def add_check(assembly_id: str, payload: OptionalCheckRequest, request: Request):
        return respond(
            get_engine(request).add_optional_check(
                assembly_id, payload.check_type, payload.actor
            )
        )

    @app.post("/quality-checks/{check_id}", dependencies=[compliance_feature])
    def perform_check(check_id: str, payload: QualityCheckRequest, request: Request):
        return respond(
            get_engine(request).perform_check(
                check_id,
                payload.status,
                payload.checked_by,
                results=payload.results,
                defects_found=payload.defects_found,
                corrective_actions=payload.corrective_actions,
            )
        )

    @app.post("/assemblies/{assembly_id}/ncr", dependencies=[compliance_feature])
    def open_ncr(assembly_id: str, payload: OpenNcrRequest, request: Request):
        service = get_engine(request)
        if payload.step is not None:
            step = parse_step(payload.step)
        else:
            progress = service.get_progress(assembly_id)
            step = progress.current_step if progress else ManufacturingStep.NOT_STARTED
        return respond(
            service.open_ncr(
                assembly_id,
                step,
                payload.description,
                payload.discovered_by,
                payload.severity,
                quality_check_id=payload.quality_check_id,
                category=payload.category,
                en1090_reference=payload.en1090_reference,
                customer_notification_required=payload.customer_notification_required,
            )
        )

    @app.get("/ncr/open", dependencies=[compliance_feature])
    def open_ncrs(request: Request):
        return jsonable_encoder(get_engine(request).list_open_ncrs())

    @app.put("/ncr/{ncr_id}", dependencies=[compliance_feature])
    def update_ncr(ncr_id: str, payload: UpdateNcrRequest, request: Request):
        return respond(
            get_engine(request).update_ncr(
                ncr_id,
                payload.status,
                root_cause=payload.root_cause,
                immediate_action=payload.immediate_action,
                preventive_action=payload.preventive_action,
                assigned_to=payload.assigned_to,
                target_resolution_date=payload.target_resolution_date,
                severity=payload.severity,
            )
        )

    # ------------------------------------------------------------------
    # Outsourced coating
    # ------------------------------------------------------------------
    @app.post("/assemblies/{assembly_id}/outsource-coating", dependencies=[outsourcing_feature])
    def outsource_coating(assembly_id: str, payload: OutsourceCoatingRequest, request: Request):
        return respond(
            get_engine(request).send_out_for_coating(
                assembly_id,
                payload.supplier_id,
                payload.expected_return_at,
                payload.actor,
                coating_specification=payload.coating_specification,
                cost=payload.cost,
            )
        )

    @app.post("/assemblies/{assembly_id}/coating-returned", dependencies=[outsourcing_feature])
    def coating_returned(assembly_id: str, payload: ActorRequest, request: Request):
        return respond(
            get_engine(request).record_coating_return(
                assembly_id, payload.actor, payload.notes
            )
        )

    @app.get("/coating/ready", dependencies=[outsourcing_feature])
    def coating_ready(request: Request):
        return jsonable_encoder(get_engine(request).ready_for_outsourced_coating())

    @app.get("/coating/awaiting-return", dependencies=[outsourcing_feature])
    def coating_awaiting(request: Request):
        return jsonable_encoder(get_engine(request).awaiting_coating_return())

    @app.get("/coating/overdue", dependencies=[outsourcing_feature])
    def coating_overdue(request: Request):
        return jsonable_encoder(get_engine(request).overdue_coatings())

    return app


def ensure_demo_data(engine: ProgressEngine) -> None:
    """Seed a handful of assemblies at different steps for the board."""

    if len(engine.store.assemblies) > 0:
        return
    actor = "Werkstatt Demo"
    column = engine.register_assembly("C-101", description="Stütze HEB 200", weight_kg=Decimal("412.5"))
    beam = engine.register_assembly("B-201", description="Träger IPE 300", weight_kg=Decimal("286.0"))
    bracing = engine.register_assembly("V-301", description="Verband L 80x8", quantity=4)

    for assembly in (column, beam, bracing):
        engine.initialize(assembly.id, actor).unwrap()
    for assembly in (column, beam):
        engine.advance_to_next_step(assembly.id, actor).unwrap()

    for check in engine.checks_for(column.id, ManufacturingStep.ASSEMBLED):
        engine.perform_check(check.id, QualityCheckStatus.PASSED, actor).unwrap()
    engine.advance_to_next_step(column.id, actor, "Heftmaß geprüft").unwrap()

    beam_checks = engine.checks_for(beam.id, ManufacturingStep.ASSEMBLED)
    engine.perform_check(
        beam_checks[0].id,
        QualityCheckStatus.FAILED,
        actor,
        defects_found="Kopfplatte 4 mm versetzt",
    ).unwrap()


__all__ = ["create_app", "ensure_demo_data", "parse_step", "respond"]
