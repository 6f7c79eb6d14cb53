"""
Unit tests for PIN persistence and audit sinks.
Supabase clients are mocked at the table() call chain.
"""

import pytest
from unittest.mock import Mock

from ...core.pin.audit import (
    MAX_METADATA_VALUE_LEN,
    InMemoryAuditLogSink,
    SupabaseAuditLogSink,
    build_audit_metadata,
    build_entry,
)
from ...core.pin.exceptions import NotFoundError, StorageError
from ...core.pin.hashing import PinHasher
from ...core.pin.models import AuditAction, AuditContext
from ...core.pin.recovery import SupabaseFunctionDelivery
from ...core.pin.store import InMemoryPinStore, SupabasePinStore
from .pin_helpers import T0

USER = "user-123"


@pytest.mark.asyncio
class TestInMemoryPinStore:
    """Test the dict-backed store."""

    def setup_method(self):
        self.store = InMemoryPinStore(hasher=PinHasher(rounds=1000))

    async def test_get_missing(self):
        """Test unknown users have no row."""
        assert await self.store.get(USER) is None

    async def test_upsert_merges_fields(self):
        """Test partial updates keep other columns."""
        await self.store.upsert(USER, {"pin_attempts": 2})
        await self.store.upsert(USER, {"pin_locked_until": T0})

        security = await self.store.get(USER)
        assert security.pin_attempts == 2
        assert security.pin_locked_until == T0

    async def test_upsert_rejects_unknown_fields(self):
        """Test only security columns are writable."""
        with pytest.raises(ValueError, match="Unknown security fields"):
            await self.store.upsert(USER, {"user_id": "someone-else"})

    async def test_returned_rows_are_copies(self):
        """Test callers cannot mutate stored state."""
        security = await self.store.upsert(USER, {"pin_attempts": 1})
        security.pin_attempts = 99

        assert (await self.store.get(USER)).pin_attempts == 1

    async def test_set_pin_resets_state(self):
        """Test setting a PIN clears attempts, lockout and recovery."""
        await self.store.upsert(USER, {
            "pin_attempts": 3,
            "pin_locked_until": T0,
            "pin_recovery_token": "digest",
            "pin_recovery_expires": T0,
        })

        security = await self.store.set_pin(USER, "1234", T0)

        assert security.has_pin
        assert security.pin_set_at == T0
        assert security.last_pin_change == T0
        assert security.pin_attempts == 0
        assert security.pin_locked_until is None
        assert security.pin_recovery_token is None
        assert security.pin_recovery_expires is None
        assert self.store.hasher.verify("1234", security.pin_hash)[0] is True

    async def test_require(self):
        """Test require distinguishes missing rows and missing PINs."""
        with pytest.raises(NotFoundError):
            await self.store.require(USER)

        await self.store.upsert(USER, {"pin_attempts": 0})
        with pytest.raises(NotFoundError):
            await self.store.require(USER)

        await self.store.set_pin(USER, "1234", T0)
        assert (await self.store.require(USER)).user_id == USER


@pytest.mark.asyncio
class TestSupabasePinStore:
    """Test the Supabase-backed store."""

    def setup_method(self):
        self.mock_supabase = Mock()
        self.store = SupabasePinStore(self.mock_supabase, hasher=PinHasher(rounds=1000))
        self.row = {
            "id": "row-1",
            "user_id": USER,
            "pin_hash": "$pbkdf2-sha256$1000$abc$def",
            "pin_attempts": 2,
            "pin_locked_until": "2026-03-02T09:15:00+00:00",
            "created_at": "2026-03-01T09:00:00+00:00",
            "updated_at": "2026-03-02T09:00:00+00:00",
        }

    async def test_get_existing(self):
        """Test rows are parsed into UserSecurity."""
        self.mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value.data = [self.row]

        security = await self.store.get(USER)

        assert security.pin_attempts == 2
        assert security.pin_locked_until.isoformat() == "2026-03-02T09:15:00+00:00"
        self.mock_supabase.table.assert_called_with("user_security")
        self.mock_supabase.table.return_value.select.return_value.eq.assert_called_with("user_id", USER)

    async def test_get_missing(self):
        """Test empty result means no row."""
        self.mock_supabase.table.return_value.select.return_value.eq.return_value.execute.return_value.data = []

        assert await self.store.get(USER) is None

    async def test_get_failure(self):
        """Test client errors become StorageError."""
        self.mock_supabase.table.return_value.select.return_value.eq.return_value.execute.side_effect = Exception("connection reset")

        with pytest.raises(StorageError):
            await self.store.get(USER)

    async def test_upsert_serializes_datetimes(self):
        """Test upsert sends ISO timestamps and conflicts on user_id."""
        self.mock_supabase.table.return_value.upsert.return_value.execute.return_value.data = [self.row]

        await self.store.upsert(USER, {"pin_attempts": 3, "pin_locked_until": T0})

        call = self.mock_supabase.table.return_value.upsert.call_args
        record = call[0][0]
        assert record["user_id"] == USER
        assert record["pin_attempts"] == 3
        assert record["pin_locked_until"] == T0.isoformat()
        assert isinstance(record["updated_at"], str)
        assert call[1]["on_conflict"] == "user_id"

    async def test_upsert_failure(self):
        """Test write errors become StorageError."""
        self.mock_supabase.table.return_value.upsert.return_value.execute.side_effect = Exception("timeout")

        with pytest.raises(StorageError):
            await self.store.upsert(USER, {"pin_attempts": 1})

    async def test_upsert_empty_response(self):
        """Test a write that returns no row is a failure."""
        self.mock_supabase.table.return_value.upsert.return_value.execute.return_value.data = []

        with pytest.raises(StorageError):
            await self.store.upsert(USER, {"pin_attempts": 1})


class TestAuditMetadata:
    """Test audit entry construction."""

    def test_metadata_normalization(self):
        """Test None dropping, datetime conversion and truncation."""
        metadata = build_audit_metadata(
            reason="bad_pin",
            attempts=2,
            locked_until=T0,
            missing=None,
            details={"a": 1},
            blob="x" * 1000,
        )

        assert metadata["reason"] == "bad_pin"
        assert metadata["attempts"] == 2
        assert metadata["locked_until"] == T0.isoformat()
        assert "missing" not in metadata
        assert metadata["details"] == '{"a":1}'
        assert len(metadata["blob"]) == MAX_METADATA_VALUE_LEN
        assert "server" in metadata

    def test_build_entry_copies_context(self):
        """Test client context lands on the entry."""
        entry = build_entry(
            USER, AuditAction.LOCKED, False,
            AuditContext(ip_address="198.51.100.4", user_agent="Mozilla/5.0"),
            attempts=5,
        )

        assert entry.action == AuditAction.LOCKED
        assert entry.success is False
        assert entry.ip_address == "198.51.100.4"
        assert entry.user_agent == "Mozilla/5.0"
        assert entry.metadata["attempts"] == 5

    def test_build_entry_without_context(self):
        """Test missing context leaves client fields empty."""
        entry = build_entry(USER, AuditAction.SET, True)

        assert entry.ip_address is None
        assert entry.user_agent is None


@pytest.mark.asyncio
class TestAuditSinks:
    """Test audit sinks."""

    async def test_in_memory_sink(self):
        """Test entries are kept in order per user."""
        sink = InMemoryAuditLogSink()
        await sink.append(build_entry(USER, AuditAction.SET, True))
        await sink.append(build_entry("other-user", AuditAction.SET, True))
        await sink.append(build_entry(USER, AuditAction.VERIFY, True))

        assert [e.action for e in sink.entries_for(USER)] == [AuditAction.SET, AuditAction.VERIFY]

    async def test_supabase_sink_insert(self):
        """Test the inserted row structure."""
        mock_supabase = Mock()
        mock_supabase.table.return_value.insert.return_value.execute.return_value.data = [{"id": "log-1"}]
        sink = SupabaseAuditLogSink(mock_supabase)
        entry = build_entry(USER, AuditAction.FAILED, False, reason="bad_pin")

        await sink.append(entry)

        mock_supabase.table.assert_called_with("pin_audit_logs")
        call_args = mock_supabase.table.return_value.insert.call_args[0][0]
        assert call_args["user_id"] == USER
        assert call_args["action"] == "failed"
        assert call_args["success"] is False
        assert call_args["metadata"]["reason"] == "bad_pin"
        assert call_args["created_at"] == entry.created_at.isoformat()

    async def test_supabase_sink_failure(self):
        """Test insert errors become StorageError."""
        mock_supabase = Mock()
        mock_supabase.table.return_value.insert.return_value.execute.side_effect = Exception("unavailable")
        sink = SupabaseAuditLogSink(mock_supabase)

        with pytest.raises(StorageError):
            await sink.append(build_entry(USER, AuditAction.SET, True))

@pytest.mark.asyncio
class TestFunctionDelivery:
    """Test recovery token delivery through the Supabase edge function."""

    async def test_deliver_invokes_function(self):
        """Test the token is sent to the function and no table is written."""
        mock_supabase = Mock()
        delivery = SupabaseFunctionDelivery(mock_supabase)

        await delivery.deliver(USER, "token-abc")

        call = mock_supabase.functions.invoke.call_args
        assert call[0][0] == "send-pin-recovery"
        assert call[1]["invoke_options"]["body"] == {"user_id": USER, "token": "token-abc"}
        mock_supabase.table.assert_not_called()

    async def test_deliver_failure(self):
        """Test function errors become StorageError."""
        mock_supabase = Mock()
        mock_supabase.functions.invoke.side_effect = Exception("unavailable")

        with pytest.raises(StorageError):
            await SupabaseFunctionDelivery(mock_supabase).deliver(USER, "token-abc")
