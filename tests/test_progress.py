import threading

import pytest

from conftest import advance_cleanly, pass_checks

from fabtrack import ManufacturingStep, QualityCheckStatus, QualityCheckType
from fabtrack.results import ErrorKind


def test_initialize_starts_at_not_started(engine, tracked):
    assembly_id = tracked()
    progress = engine.get_progress(assembly_id)
    assert progress.current_step is ManufacturingStep.NOT_STARTED
    assert progress.previous_step is None
    assert progress.current_step_started_at is not None
    assert engine.checks_for(assembly_id) == []


def test_initialize_is_idempotent(engine, tracked):
    assembly_id = tracked()
    first = engine.get_progress(assembly_id)
    advance_cleanly(engine, assembly_id)

    again = engine.initialize(assembly_id, "someone else")

    assert again.ok
    assert again.value.id == first.id
    assert again.value.current_step is ManufacturingStep.ASSEMBLED
    assert len(engine.store.progress) == 1
    assert len(engine.checks_for(assembly_id)) == 3


def test_initialize_requires_known_assembly_and_actor(engine):
    assert engine.initialize("missing", "werker").kind is ErrorKind.NOT_FOUND
    assembly = engine.register_assembly("ST-9")
    assert engine.initialize(assembly.id, "  ").kind is ErrorKind.INVALID_INPUT
    assert engine.get_progress(assembly.id) is None


def test_register_assembly_validates_input(engine):
    with pytest.raises(ValueError):
        engine.register_assembly("   ")
    with pytest.raises(ValueError):
        engine.register_assembly("ST-1", quantity=0)


def test_advance_without_tracking_is_not_found(engine):
    assembly = engine.register_assembly("ST-2")
    result = engine.advance_to_next_step(assembly.id, "werker")
    assert result.kind is ErrorKind.NOT_FOUND


def test_first_advance_records_history_and_instantiates_checks(engine, tracked):
    assembly_id = tracked()

    result = engine.advance_to_next_step(assembly_id, "werker", "Zuschnitt fertig")

    assert result.ok
    progress = result.value
    assert progress.current_step is ManufacturingStep.ASSEMBLED
    assert progress.previous_step is ManufacturingStep.NOT_STARTED
    assert progress.notes == "Zuschnitt fertig"
    history = engine.step_history(assembly_id)
    assert [entry.step for entry in history] == [ManufacturingStep.NOT_STARTED]
    assert history[0].completed_at == progress.current_step_started_at
    checks = engine.checks_for(assembly_id, ManufacturingStep.ASSEMBLED)
    assert [check.check_type for check in checks] == [
        QualityCheckType.VISUAL_TESTING,
        QualityCheckType.DIMENSIONAL_CHECK,
        QualityCheckType.QUALITY_ASSURANCE,
    ]
    assert all(check.status is QualityCheckStatus.PENDING for check in checks)
    assembly = engine.get_assembly(assembly_id)
    assert assembly.current_step is ManufacturingStep.ASSEMBLED
    assert assembly.progress_percentage == 20
    assert assembly.manufacturing_started_at is not None


def test_pending_checks_block_and_leave_state_untouched(engine, tracked):
    assembly_id = tracked()
    advance_cleanly(engine, assembly_id)
    before = engine.get_progress(assembly_id)

    result = engine.advance_to_next_step(assembly_id, "werker")

    assert result.kind is ErrorKind.QUALITY_GATE_BLOCKED
    assert "VisualTesting" in result.error.message
    after = engine.get_progress(assembly_id)
    assert after == before
    assert len(engine.step_history(assembly_id)) == 1


def test_passing_all_required_checks_opens_the_gate(engine, tracked):
    assembly_id = tracked()
    advance_cleanly(engine, assembly_id)
    assert not engine.can_advance(assembly_id)

    pass_checks(engine, assembly_id)

    assert engine.can_advance(assembly_id)
    result = engine.advance_to_next_step(assembly_id, "werker")
    assert result.value.current_step is ManufacturingStep.WELDED


def test_failed_accepted_clears_the_gate(engine, tracked):
    assembly_id = tracked()
    advance_cleanly(engine, assembly_id)
    checks = engine.checks_for(assembly_id, ManufacturingStep.ASSEMBLED)
    engine.perform_check(checks[0].id, QualityCheckStatus.FAILED, "qs").unwrap()
    engine.perform_check(checks[0].id, QualityCheckStatus.FAILED_ACCEPTED, "qs").unwrap()
    for check in checks[1:]:
        engine.perform_check(check.id, QualityCheckStatus.PASSED, "qs").unwrap()

    assert engine.advance_to_next_step(assembly_id, "werker").ok


def test_optional_checks_never_block(engine, tracked):
    assembly_id = tracked()
    advance_cleanly(engine, assembly_id)
    optional = engine.add_optional_check(
        assembly_id, QualityCheckType.FINAL_INSPECTION, "qs"
    ).unwrap()
    assert not optional.is_required
    for check in engine.checks_for(assembly_id, ManufacturingStep.ASSEMBLED):
        if check.is_required:
            engine.perform_check(check.id, QualityCheckStatus.PASSED, "qs").unwrap()
    engine.perform_check(optional.id, QualityCheckStatus.IN_PROGRESS, "qs").unwrap()

    assert engine.advance_to_next_step(assembly_id, "werker").ok


def test_advance_to_rejects_anything_but_the_successor(engine, tracked):
    assembly_id = tracked()

    skip = engine.advance_to(assembly_id, ManufacturingStep.WELDED, "werker")
    back = engine.advance_to(assembly_id, ManufacturingStep.NOT_STARTED, "werker")

    assert skip.kind is ErrorKind.INVALID_PROGRESSION
    assert back.kind is ErrorKind.INVALID_PROGRESSION
    assert engine.get_progress(assembly_id).current_step is ManufacturingStep.NOT_STARTED
    assert engine.advance_to(assembly_id, ManufacturingStep.ASSEMBLED, "werker").ok


def test_full_run_reaches_delivered_and_stops(engine, tracked):
    assembly_id = tracked()

    advance_cleanly(engine, assembly_id, times=6)

    progress = engine.get_progress(assembly_id)
    assert progress.current_step is ManufacturingStep.DELIVERED
    history = engine.step_history(assembly_id)
    assert [entry.step for entry in history] == list(ManufacturingStep)[:-1]
    for earlier, later in zip(history, history[1:]):
        assert earlier.completed_at == later.started_at
    assembly = engine.get_assembly(assembly_id)
    assert assembly.progress_percentage == 100
    assert assembly.manufacturing_completed_at is not None

    result = engine.advance_to_next_step(assembly_id, "werker")
    assert result.kind is ErrorKind.ALREADY_TERMINAL
    assert len(engine.step_history(assembly_id)) == 6


def test_complete_current_step_is_cleared_by_the_next_advance(engine, tracked):
    assembly_id = tracked()
    completed = engine.complete_current_step(assembly_id, "werker", "fertig").unwrap()
    assert completed.current_step_completed_at is not None
    assert completed.current_step is ManufacturingStep.NOT_STARTED

    advanced = engine.advance_to_next_step(assembly_id, "werker").unwrap()
    assert advanced.current_step_completed_at is None


def test_assemblies_at_step(engine, tracked):
    first = tracked("ST-1")
    second = tracked("ST-2")
    advance_cleanly(engine, first)

    at_start = engine.assemblies_at_step(ManufacturingStep.NOT_STARTED)
    assembled = engine.assemblies_at_step(ManufacturingStep.ASSEMBLED)

    assert [state.assembly_id for state in at_start] == [second]
    assert [state.assembly_id for state in assembled] == [first]


def test_quality_status_summary(engine, tracked):
    assembly_id = tracked()
    progress = engine.get_progress(assembly_id)
    assert engine.quality_status(progress, []) == "No checks"

    advance_cleanly(engine, assembly_id)
    checks = engine.checks_for(assembly_id)
    progress = engine.get_progress(assembly_id)
    assert engine.quality_status(progress, checks) == "3 pending"

    engine.perform_check(checks[0].id, QualityCheckStatus.FAILED, "qs").unwrap()
    checks = engine.checks_for(assembly_id)
    assert engine.quality_status(progress, checks) == "1 failed"

    pass_checks(engine, assembly_id)
    assert engine.quality_status(progress, engine.checks_for(assembly_id)) == "All passed"


def test_concurrent_advances_apply_exactly_once(engine, tracked):
    assembly_id = tracked()
    results = []
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        results.append(engine.advance_to_next_step(assembly_id, "werker"))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for result in results if result.ok) == 1
    assert {result.kind for result in results if not result.ok} == {
        ErrorKind.QUALITY_GATE_BLOCKED
    }
    assert len(engine.step_history(assembly_id)) == 1
    assert len(engine.checks_for(assembly_id)) == 3


def test_only_a_failed_check_can_be_accepted(engine, tracked):
    assembly_id = tracked()
    advance_cleanly(engine, assembly_id)
    checks = engine.checks_for(assembly_id, ManufacturingStep.ASSEMBLED)

    for check in checks:
        result = engine.perform_check(check.id, QualityCheckStatus.FAILED_ACCEPTED, "qs")
        assert result.kind is ErrorKind.INVALID_INPUT

    assert all(
        check.status is QualityCheckStatus.PENDING
        for check in engine.checks_for(assembly_id, ManufacturingStep.ASSEMBLED)
    )
    assert engine.advance_to_next_step(assembly_id, "werker").kind is (
        ErrorKind.QUALITY_GATE_BLOCKED
    )

    engine.perform_check(checks[0].id, QualityCheckStatus.PASSED, "qs").unwrap()
    refused = engine.perform_check(checks[0].id, QualityCheckStatus.FAILED_ACCEPTED, "qs")
    assert refused.kind is ErrorKind.INVALID_INPUT
    assert engine.ncrs_for(assembly_id) == []
