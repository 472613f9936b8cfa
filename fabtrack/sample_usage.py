"""Demonstration script for the EN 1090 manufacturing progress engine."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from pprint import pprint

from . import (
    ManufacturingStep,
    NonComplianceSeverity,
    NonComplianceStatus,
    ProgressEngine,
    QualityCheckStatus,
)


def pass_open_checks(engine: ProgressEngine, assembly_id: str, inspector: str) -> None:
    progress = engine.get_progress(assembly_id)
    for check in engine.checks_for(assembly_id, progress.current_step):
        if check.status == QualityCheckStatus.PENDING:
            engine.perform_check(check.id, QualityCheckStatus.PASSED, inspector).unwrap()


def main() -> None:
    engine = ProgressEngine()
    worker = "M. Schneider"
    inspector = "QS K. Wagner"

    # Stammdaten
    column = engine.register_assembly(
        "ST-12",
        description="Stütze HEB 240, Achse C/4",
        weight_kg=Decimal("512.4"),
    )
    engine.initialize(column.id, worker).unwrap()

    # Heften, Schweißen, Vorbereitung
    for notes in ("Zuschnitt komplett", "Geheftet", "Nähte geschweißt"):
        pass_open_checks(engine, column.id, inspector)
        engine.advance_to_next_step(column.id, worker, notes).unwrap()

    # Das Tor hält, solange eine Pflichtprüfung offen ist
    pass_open_checks(engine, column.id, inspector)
    progress = engine.get_progress(column.id)
    print(f"{column.mark}: {progress.current_step.label}")

    # Externe Beschichtung
    engine.send_out_for_coating(
        column.id,
        supplier_id="Verzinkerei Nord",
        expected_return_at=progress.updated_at + timedelta(days=5),
        actor=worker,
        coating_specification="Feuerverzinkt nach EN ISO 1461",
        cost=Decimal("380.00"),
    ).unwrap()
    blocked = engine.advance_to_next_step(column.id, worker)
    print(f"Manueller Schritt während Beschichtung: {blocked.kind.value}")
    engine.record_coating_return(column.id, "Wareneingang", "Schichtdicke ok").unwrap()

    # Kritische Abweichung sperrt die Freigabe
    pass_open_checks(engine, column.id, inspector)
    ncr = engine.open_ncr(
        column.id,
        ManufacturingStep.COATING_DONE,
        "Zinkablaufnase an Kopfplatte",
        inspector,
        NonComplianceSeverity.CRITICAL,
        en1090_reference="EN 1090-2, 10.1",
    ).unwrap()
    refused = engine.advance_to_next_step(column.id, worker)
    print(f"{ncr.ncr_number} blockiert: {refused.error.message}")
    engine.update_ncr(
        ncr.id,
        NonComplianceStatus.CLOSED,
        root_cause="Abtropfkante fehlte",
        immediate_action="Nase verschliffen, nachgemessen",
    ).unwrap()

    engine.advance_to_next_step(column.id, worker, "Beschichtung abgenommen").unwrap()
    pass_open_checks(engine, column.id, inspector)
    engine.advance_to(column.id, ManufacturingStep.DELIVERED, worker, "Ausgeliefert").unwrap()

    report = engine.progress_report(column.id).unwrap()
    print("\nSchrittverlauf")
    for entry in report.step_history:
        print(f" - {entry.step.label}: {entry.updated_by} ({entry.notes or '-'})")
    print(f"\nFortschritt: {report.assembly.progress_percentage}%")
    pprint(
        {
            "quality_status": report.quality_status,
            "open_ncrs": report.open_ncr_count,
            "coatings": len(report.coatings),
        }
    )


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
