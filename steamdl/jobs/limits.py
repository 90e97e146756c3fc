"""Identity → limits resolution."""
from __future__ import annotations

from typing import Dict, Mapping, Optional, Protocol

from .models import Limits


class LimitsProvider(Protocol):
    async def resolve(self, identity_id: str) -> Limits: ...


class StaticLimitsProvider:
    """Fixed per-identity limits with a fallback for unknown identities."""

    def __init__(self, limits: Optional[Mapping[str, Limits]] = None, default: Optional[Limits] = None) -> None:
        self._limits: Dict[str, Limits] = dict(limits or {})
        self._default = default or Limits()

    def set(self, identity_id: str, limits: Limits) -> None:
        self._limits[identity_id] = limits

    async def resolve(self, identity_id: str) -> Limits:
        return self._limits.get(identity_id, self._default)
