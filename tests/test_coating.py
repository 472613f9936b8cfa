from datetime import datetime, timedelta, timezone
from decimal import Decimal

from conftest import advance_cleanly, pass_checks

from fabtrack import CoatingStatus, ManufacturingStep
from fabtrack.results import ErrorKind


def ready_for_coating(engine, tracked, mark="ST-1"):
    assembly_id = tracked(mark)
    advance_cleanly(engine, assembly_id, times=3)
    assert engine.get_progress(assembly_id).current_step is ManufacturingStep.READY_FOR_COATING
    return assembly_id


def send_out(engine, clock, assembly_id, days=5):
    return engine.send_out_for_coating(
        assembly_id,
        "Verzinkerei Nord",
        clock.current + timedelta(days=days),
        "versand",
        coating_specification="EN ISO 1461",
        cost=250.5,
    )


def test_coating_can_only_be_sent_from_ready_for_coating(engine, tracked, clock):
    assembly_id = tracked()
    result = send_out(engine, clock, assembly_id)
    assert result.kind is ErrorKind.WRONG_STEP
    assert engine.coatings_for(assembly_id) == []
    assert not engine.get_progress(assembly_id).is_coating_outsourced


def test_send_out_requires_supplier(engine, tracked, clock):
    assembly_id = ready_for_coating(engine, tracked)
    result = engine.send_out_for_coating(
        assembly_id, " ", clock.current + timedelta(days=1), "versand"
    )
    assert result.kind is ErrorKind.INVALID_INPUT


def test_outsourced_coating_round_trip(engine, tracked, clock):
    assembly_id = ready_for_coating(engine, tracked)
    pass_checks(engine, assembly_id)

    record = send_out(engine, clock, assembly_id).unwrap()

    assert record.status is CoatingStatus.SENT
    assert record.cost == Decimal("250.5")
    progress = engine.get_progress(assembly_id)
    assert progress.is_awaiting_coating_return
    assert progress.outsourced_coating_sent_at == record.sent_at
    assert [state.assembly_id for state in engine.awaiting_coating_return()] == [assembly_id]
    assert engine.ready_for_outsourced_coating() == []

    assert engine.advance_to_next_step(assembly_id, "werker").kind is (
        ErrorKind.COATING_OUTSTANDING
    )
    assert send_out(engine, clock, assembly_id).kind is ErrorKind.COATING_OUTSTANDING

    result = engine.record_coating_return(assembly_id, "wareneingang", "Schichtdicke ok")

    assert result.ok
    progress = result.value
    assert progress.current_step is ManufacturingStep.COATING_DONE
    assert progress.outsourced_coating_actual_return_at is not None
    assert not progress.is_awaiting_coating_return
    (returned,) = engine.coatings_for(assembly_id)
    assert returned.status is CoatingStatus.RETURNED
    assert returned.received_by == "wareneingang"
    history = engine.step_history(assembly_id)
    assert [entry.step for entry in history].count(ManufacturingStep.READY_FOR_COATING) == 1
    assert engine.awaiting_coating_return() == []

    again = engine.record_coating_return(assembly_id, "wareneingang")
    assert again.kind is ErrorKind.NOT_FOUND
    assert engine.get_progress(assembly_id).current_step is ManufacturingStep.COATING_DONE


def test_return_without_send_out_is_not_found(engine, tracked):
    assembly_id = ready_for_coating(engine, tracked)
    result = engine.record_coating_return(assembly_id, "wareneingang")
    assert result.kind is ErrorKind.NOT_FOUND
    assert engine.get_progress(assembly_id).current_step is ManufacturingStep.READY_FOR_COATING


def test_return_refused_by_gate_keeps_coating_outstanding(engine, tracked, clock):
    assembly_id = ready_for_coating(engine, tracked)
    send_out(engine, clock, assembly_id).unwrap()

    result = engine.record_coating_return(assembly_id, "wareneingang")

    assert result.kind is ErrorKind.QUALITY_GATE_BLOCKED
    progress = engine.get_progress(assembly_id)
    assert progress.current_step is ManufacturingStep.READY_FOR_COATING
    assert progress.is_awaiting_coating_return
    assert engine.coatings_for(assembly_id)[0].status is CoatingStatus.SENT

    pass_checks(engine, assembly_id)
    assert engine.record_coating_return(assembly_id, "wareneingang").ok


def test_overdue_coatings(engine, tracked, clock):
    late = ready_for_coating(engine, tracked, "ST-1")
    punctual = ready_for_coating(engine, tracked, "ST-2")
    waiting = ready_for_coating(engine, tracked, "ST-3")
    send_out(engine, clock, late, days=1).unwrap()
    send_out(engine, clock, punctual, days=10).unwrap()

    clock.jump(timedelta(days=3))

    assert [state.assembly_id for state in engine.overdue_coatings()] == [late]
    assert engine.is_coating_overdue(engine.get_progress(late), clock.current)
    assert not engine.is_coating_overdue(engine.get_progress(waiting), clock.current)
    assert not engine.is_coating_overdue(None, clock.current)
    assert [state.assembly_id for state in engine.ready_for_outsourced_coating()] == [waiting]
    report = engine.progress_report(late).unwrap()
    assert report.coating_overdue


def test_naive_return_dates_are_stored_as_utc(engine, tracked, clock):
    assembly_id = ready_for_coating(engine, tracked)
    naive = datetime(2025, 3, 11, 12, 0)

    record = engine.send_out_for_coating(
        assembly_id, "Pulverbeschichter", naive, "versand"
    ).unwrap()

    assert record.expected_return_at == datetime(2025, 3, 11, 12, 0, tzinfo=timezone.utc)
    progress = engine.get_progress(assembly_id)
    assert progress.outsourced_coating_expected_return_at.tzinfo is not None
    assert engine.overdue_coatings() == []

    clock.jump(timedelta(days=2))

    assert [state.assembly_id for state in engine.overdue_coatings()] == [assembly_id]
    assert engine.is_coating_overdue(progress, datetime(2025, 3, 20))
    assert engine.progress_report(assembly_id).unwrap().coating_overdue


def test_aware_return_dates_are_converted_to_utc(engine, tracked):
    assembly_id = ready_for_coating(engine, tracked)
    berlin = timezone(timedelta(hours=1))

    record = engine.send_out_for_coating(
        assembly_id, "Verzinkerei Nord", datetime(2025, 3, 14, 9, 0, tzinfo=berlin), "versand"
    ).unwrap()

    assert record.expected_return_at == datetime(2025, 3, 14, 8, 0, tzinfo=timezone.utc)
    assert record.expected_return_at.utcoffset() == timedelta(0)
