"""Runtime configuration and logging setup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

from .domain import NonComplianceSeverity
from .gating import FeatureKeys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class EngineOptions:
    """Tuning parameters for the progress engine."""

    max_retries: int = 3
    default_ncr_severity: NonComplianceSeverity = NonComplianceSeverity.MAJOR
    ncr_prefix: str = "NCR"


@dataclass(slots=True)
class Settings:
    database_path: str = ""
    log_level: str = "INFO"
    enabled_features: FrozenSet[str] = field(default_factory=lambda: FeatureKeys.ALL)
    demo_data: bool = False
    engine: EngineOptions = field(default_factory=EngineOptions)

    @property
    def uses_memory_store(self) -> bool:
        return self.database_path in {"", ":memory:"}

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        features_env = env.get("FABTRACK_ENABLED_FEATURES")
        if features_env is None:
            features = FeatureKeys.ALL
        else:
            features = frozenset(
                key.strip() for key in features_env.split(",") if key.strip()
            )
        retries = env.get("FABTRACK_MAX_RETRIES", "").strip()
        return cls(
            database_path=env.get("FABTRACK_DATABASE", "").strip(),
            log_level=(env.get("FABTRACK_LOG_LEVEL") or "INFO").upper(),
            enabled_features=features,
            demo_data=env.get("FABTRACK_DEMO_DATA", "").lower() in {"1", "true", "yes"},
            engine=EngineOptions(max_retries=max(int(retries), 0) if retries else 3),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a basic handler for the ``fabtrack`` loggers."""

    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("fabtrack").setLevel(level)


__all__ = ["EngineOptions", "Settings", "configure_logging", "LOG_FORMAT"]
