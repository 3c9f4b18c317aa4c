"""Unit tests for gateway persistence.

The in-memory repository is exercised directly. PostgresRepository is
tested against a mocked asyncpg pool to check SQL results handling,
optimistic locking and error wrapping.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.gateway.storage import (
    DatabaseError,
    GatewayRepository,
    InMemoryRepository,
    PostgresRepository,
    Subscription,
    WebhookEvent,
)


def run_async(coro):
    return asyncio.run(coro)


def _subscription(**overrides):
    fields = {
        "id": "sub-1",
        "session_id": "sess-1",
        "webhook_url": "http://127.0.0.1:7842/webhook/sub-1",
    }
    fields.update(overrides)
    return Subscription(**fields)


def _row(subscription: Subscription) -> dict:
    row = subscription.model_dump()
    row["signature_encoding"] = subscription.signature_encoding.value
    row["status"] = subscription.status.value
    row["created_at"] = subscription.created_at.replace(tzinfo=None)
    return row


def _make_pool(conn):
    pool = MagicMock()
    acquire = MagicMock()
    acquire.__aenter__ = AsyncMock(return_value=conn)
    acquire.__aexit__ = AsyncMock(return_value=False)
    pool.acquire.return_value = acquire
    return pool


def _make_conn(execute_result="UPDATE 1"):
    conn = MagicMock()
    conn.execute = AsyncMock(return_value=execute_result)
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=1)
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction.return_value = transaction
    return conn


def _postgres(conn):
    repository = PostgresRepository("postgresql://gateway@localhost/gateway")
    repository._pool = _make_pool(conn)
    return repository


class TestInMemoryRepository:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryRepository(), GatewayRepository)

    def test_returned_records_are_copies(self):
        repository = InMemoryRepository()

        async def scenario():
            await repository.save_subscription(_subscription())
            fetched = await repository.get_subscription("sub-1")
            fetched.prompt = "mutated"
            return await repository.get_subscription("sub-1")

        assert run_async(scenario()).prompt == ""

    def test_duplicate_id_is_rejected(self):
        repository = InMemoryRepository()

        async def scenario():
            await repository.save_subscription(_subscription())
            await repository.save_subscription(_subscription())

        with pytest.raises(ValueError):
            run_async(scenario())

    def test_version_check(self):
        repository = InMemoryRepository()

        async def scenario():
            await repository.save_subscription(_subscription())
            stale = await repository.update_subscription_with_version(
                _subscription(version=3, prompt="stale")
            )
            fresh = await repository.update_subscription_with_version(
                _subscription(version=2, prompt="fresh")
            )
            return stale, fresh, await repository.get_subscription("sub-1")

        stale, fresh, stored = run_async(scenario())

        assert not stale
        assert fresh
        assert stored.prompt == "fresh"

    def test_events_outlive_subscription(self):
        repository = InMemoryRepository()

        async def scenario():
            await repository.save_subscription(_subscription())
            await repository.save_event(
                WebhookEvent(id="evt-1", subscription_id="sub-1", payload=b"{}")
            )
            await repository.delete_subscription("sub-1")
            return await repository.get_event("evt-1")

        assert run_async(scenario()).payload == b"{}"


class TestPostgresRepository:
    def test_pool_required(self):
        repository = PostgresRepository("postgresql://localhost/gateway")

        with pytest.raises(DatabaseError):
            run_async(repository.get_subscription("sub-1"))

    def test_update_applies_with_matching_version(self):
        conn = _make_conn("UPDATE 1")
        repository = _postgres(conn)

        updated = run_async(
            repository.update_subscription_with_version(_subscription(version=4))
        )

        assert updated
        args = conn.execute.call_args.args
        assert args[1] == "sub-1"
        assert args[-2] == 4
        assert args[-1] == 3

    def test_update_reports_version_conflict(self):
        repository = _postgres(_make_conn("UPDATE 0"))

        assert not run_async(
            repository.update_subscription_with_version(_subscription(version=2))
        )

    def test_delete_reports_missing_row(self):
        assert run_async(_postgres(_make_conn("DELETE 1")).delete_subscription("sub-1"))
        assert not run_async(_postgres(_make_conn("DELETE 0")).delete_subscription("x"))

    def test_row_is_mapped_to_subscription(self):
        conn = _make_conn()
        original = _subscription(service="github", status="paused")
        conn.fetchrow = AsyncMock(return_value=_row(original))

        fetched = run_async(_postgres(conn).get_subscription("sub-1"))

        assert fetched.service == "github"
        assert fetched.is_paused
        assert fetched.created_at.tzinfo == timezone.utc

    def test_event_row_is_mapped(self):
        conn = _make_conn()
        conn.fetchrow = AsyncMock(
            return_value={
                "id": "evt-1",
                "subscription_id": "sub-1",
                "received_at": datetime(2026, 1, 1, 12, 0),
                "payload": b"\xff{}",
                "summary": None,
                "delivered": True,
            }
        )

        event = run_async(_postgres(conn).get_event("evt-1"))

        assert event.delivered
        assert event.received_at.tzinfo == timezone.utc
        assert event.payload == b"\xff{}"

    def test_event_payload_is_written_as_bytes(self):
        conn = _make_conn("INSERT 0 1")
        event = WebhookEvent(id="evt-1", subscription_id="sub-1", payload=b"\x00\xff")

        run_async(_postgres(conn).save_event(event))

        assert conn.execute.call_args.args[4] == b"\x00\xff"

    def test_driver_errors_are_wrapped(self):
        conn = _make_conn()
        failure = OSError("connection reset")
        conn.execute = AsyncMock(side_effect=failure)

        with pytest.raises(DatabaseError) as exc_info:
            run_async(_postgres(conn).mark_event_delivered("evt-1"))

        assert exc_info.value.original_error is failure

    def test_health_check_reports_failure(self):
        conn = _make_conn()
        conn.fetchval = AsyncMock(side_effect=OSError("down"))

        assert not run_async(_postgres(conn).health_check())
        assert run_async(_postgres(_make_conn()).health_check())
