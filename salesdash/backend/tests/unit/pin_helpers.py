"""
Shared fixtures for PIN tests: a controllable clock and in-memory gate wiring.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from ...core.pin.audit import InMemoryAuditLogSink
from ...core.pin.config import PinSecurityConfig
from ...core.pin.gate import VerificationGate
from ...core.pin.hashing import PinHasher
from ...core.pin.store import InMemoryPinStore

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class YieldingPinStore(InMemoryPinStore):
    """In-memory store that yields to the event loop on every call, exposing races."""

    async def get(self, user_id):
        await asyncio.sleep(0)
        row = await super().get(user_id)
        await asyncio.sleep(0)
        return row

    async def upsert(self, user_id, fields):
        await asyncio.sleep(0)
        return await super().upsert(user_id, fields)


def make_config(**overrides) -> PinSecurityConfig:
    params = {"hash_rounds": 1000}
    params.update(overrides)
    return PinSecurityConfig(**params)


def make_gate(config: PinSecurityConfig = None, clock: FakeClock = None, store: InMemoryPinStore = None, audit_sink=None):
    """Build a gate over in-memory collaborators; returns (gate, store, sink, clock)."""
    config = config or make_config()
    clock = clock or FakeClock()
    store = store or InMemoryPinStore(hasher=PinHasher(config.hash_rounds))
    audit_sink = audit_sink or InMemoryAuditLogSink()
    gate = VerificationGate(store, audit_sink, config=config, clock=clock)
    return gate, store, audit_sink, clock
