from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from fabtrack import ProgressEngine, QualityCheckStatus
from fabtrack.repository import InMemoryStore
from fabtrack.storage import EngineDatabase


class TickingClock:
    """Returns a strictly increasing time, one minute per call."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(minutes=1)
        return self.current

    def jump(self, delta: timedelta) -> None:
        self.current += delta


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock(datetime(2025, 3, 10, 6, 0, tzinfo=timezone.utc))


@pytest.fixture()
def engine(clock) -> ProgressEngine:
    return ProgressEngine(InMemoryStore(), clock=clock)


@pytest.fixture(params=["memory", "sqlite"])
def any_engine(request, clock, tmp_path):
    if request.param == "memory":
        store = InMemoryStore()
    else:
        store = EngineDatabase(str(tmp_path / "progress.sqlite3"))
    yield ProgressEngine(store, clock=clock)
    store.close()


@pytest.fixture()
def tracked(engine):
    """Register and initialise an assembly, returning its id."""

    def factory(mark: str = "ST-1", target_engine: ProgressEngine | None = None) -> str:
        service = target_engine or engine
        assembly = service.register_assembly(mark, description="Stütze")
        service.initialize(assembly.id, "werker").unwrap()
        return assembly.id

    return factory


def pass_checks(engine: ProgressEngine, assembly_id: str, inspector: str = "qs") -> None:
    progress = engine.get_progress(assembly_id)
    for check in engine.checks_for(assembly_id, progress.current_step):
        if not check.status.clears_gate:
            engine.perform_check(check.id, QualityCheckStatus.PASSED, inspector).unwrap()


def advance_cleanly(engine: ProgressEngine, assembly_id: str, times: int = 1) -> None:
    for _ in range(times):
        pass_checks(engine, assembly_id)
        engine.advance_to_next_step(assembly_id, "werker").unwrap()
