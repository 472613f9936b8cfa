"""Capability checks consumed at the engine boundary.

Subscription tiers are owned elsewhere; the engine only ever sees the outcome
of a check as an :class:`Allowed` or :class:`Denied` value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Mapping, Optional, Protocol, Union


class FeatureKeys:
    MANUFACTURING_PROGRESS = "manufacturing_progress"
    EN1090_COMPLIANCE = "en1090_compliance"
    OUTSOURCING_MANAGEMENT = "outsourcing_management"

    ALL: FrozenSet[str] = frozenset(
        {MANUFACTURING_PROGRESS, EN1090_COMPLIANCE, OUTSOURCING_MANAGEMENT}
    )


@dataclass(slots=True, frozen=True)
class Allowed:
    allowed: bool = field(default=True, init=False)


@dataclass(slots=True, frozen=True)
class Denied:
    reason: str
    allowed: bool = field(default=False, init=False)


Capability = Union[Allowed, Denied]


class FeatureGate(Protocol):
    def check(self, tenant_id: Optional[str], feature_key: str) -> Capability:
        ...


class StaticFeatureGate:
    """Feature gate backed by a fixed set of enabled keys.

    ``tenant_overrides`` maps a tenant id to the keys enabled for it; tenants
    without an override get ``enabled``. Unknown keys are denied.
    """

    def __init__(
        self,
        enabled: Iterable[str],
        *,
        tenant_overrides: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> None:
        self._enabled = frozenset(enabled)
        self._overrides = {
            tenant: frozenset(keys) for tenant, keys in (tenant_overrides or {}).items()
        }

    def check(self, tenant_id: Optional[str], feature_key: str) -> Capability:
        keys = self._overrides.get(tenant_id, self._enabled) if tenant_id else self._enabled
        if feature_key in keys:
            return Allowed()
        return Denied(f"Feature {feature_key!r} is not enabled for this tenant")


__all__ = [
    "FeatureKeys",
    "Allowed",
    "Denied",
    "Capability",
    "FeatureGate",
    "StaticFeatureGate",
]
