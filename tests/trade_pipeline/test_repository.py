"""
Trade Queue Repository Tests.

============================================================
PURPOSE
============================================================
Compare-and-swap writes against a real (SQLite) store.

TEST CATEGORIES:
- Transition tests: CAS, audit trail, append-only snapshots
- Reschedule and claim tests: attempts, leases, next_run_at
- Batch tests: status and due gating, ordering
- Agent / consultation tests
- Store URL tests

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from database import DEFAULT_DATABASE_URL, get_database_url
from trade_pipeline.models import ExchangeApiKeyModel
from trade_pipeline.repository import (
    TradeQueueRepository,
    AgentRepository,
    ConsultationRepository,
    ExchangeKeyRepository,
    merge_append,
)
from trade_pipeline.types import (
    TradeStatus,
    AgentStatus,
    Consultation,
    InvalidTransitionError,
    utcnow,
)


# ============================================================
# TRANSITION TESTS
# ============================================================

class TestTransition:
    """Tests for TradeQueueRepository.transition."""

    @pytest.mark.asyncio
    async def test_transition_moves_status(self, session, seed, make_trade):
        trade = await seed.trade(make_trade())
        repo = TradeQueueRepository(session)

        moved = await repo.transition(
            trade.id,
            TradeStatus.QUEUED,
            TradeStatus.QUOTED,
            reason="quoted",
            fields={"quote_snapshot": {"buyAmount": "1"}},
        )

        assert moved
        stored = await repo.get(trade.id)
        assert stored.status == TradeStatus.QUOTED
        assert stored.quote_snapshot == {"buyAmount": "1"}

    @pytest.mark.asyncio
    async def test_second_writer_is_a_noop(self, session, seed, make_trade):
        """A stale expected status matches no row and returns False."""
        trade = await seed.trade(make_trade())
        repo = TradeQueueRepository(session)

        first = await repo.transition(trade.id, TradeStatus.QUEUED, TradeStatus.QUOTED)
        second = await repo.transition(trade.id, TradeStatus.QUEUED, TradeStatus.QUOTED)

        assert first is True
        assert second is False
        events = await repo.get_events(trade.id)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_signed_record_is_not_signed_again(self, session, seed, make_trade):
        trade = await seed.trade(make_trade(TradeStatus.QUOTED, quote_snapshot={"buyAmount": "1"}))
        repo = TradeQueueRepository(session)

        assert await repo.transition(
            trade.id, TradeStatus.QUOTED, TradeStatus.SIGNED,
            append={"signed_payload": {"signature": "0xfirst"}},
        )
        assert not await repo.transition(
            trade.id, TradeStatus.QUOTED, TradeStatus.SIGNED,
            append={"signed_payload": {"signature": "0xsecond"}},
        )

        stored = await repo.get(trade.id)
        assert stored.signed_payload == {"signature": "0xfirst"}

    @pytest.mark.asyncio
    async def test_missing_trade_returns_false(self, session):
        repo = TradeQueueRepository(session)
        assert not await repo.transition("missing", TradeStatus.QUEUED, TradeStatus.QUOTED)

    @pytest.mark.asyncio
    async def test_invalid_edge_raises(self, session, seed, make_trade):
        trade = await seed.trade(make_trade())
        repo = TradeQueueRepository(session)

        with pytest.raises(InvalidTransitionError):
            await repo.transition(trade.id, TradeStatus.QUEUED, TradeStatus.FILLED)

        assert (await repo.get(trade.id)).status == TradeStatus.QUEUED

    @pytest.mark.asyncio
    async def test_walk_records_every_edge(self, session, seed, make_trade):
        trade = await seed.trade(make_trade(TradeStatus.QUOTED, quote_snapshot={"symbol": "ETHUSDC"}))
        repo = TradeQueueRepository(session)

        assert await repo.transition(
            trade.id,
            TradeStatus.QUOTED,
            TradeStatus.FILLED,
            via=(TradeStatus.SIGNED, TradeStatus.SUBMITTED),
            append={"execution_result": {"avgPrice": "2500"}},
        )

        events = await repo.get_events(trade.id)
        assert [(e.from_status, e.to_status) for e in events] == [
            (TradeStatus.QUOTED, TradeStatus.SIGNED),
            (TradeStatus.SIGNED, TradeStatus.SUBMITTED),
            (TradeStatus.SUBMITTED, TradeStatus.FILLED),
        ]

    @pytest.mark.asyncio
    async def test_quote_snapshot_is_immutable(self, session, seed, make_trade):
        trade = await seed.trade(make_trade(TradeStatus.QUOTED, quote_snapshot={"buyAmount": "1"}))
        repo = TradeQueueRepository(session)

        with pytest.raises(ValueError):
            await repo.transition(
                trade.id, TradeStatus.QUOTED, TradeStatus.SIGNED,
                fields={"quote_snapshot": {"buyAmount": "2"}},
            )

    @pytest.mark.asyncio
    async def test_append_cannot_overwrite(self, session, seed, make_trade):
        trade = await seed.trade(make_trade(
            TradeStatus.SIGNED,
            quote_snapshot={"buyAmount": "1"},
            signed_payload={"signature": "0xaa"},
        ))
        repo = TradeQueueRepository(session)

        with pytest.raises(ValueError):
            await repo.transition(
                trade.id, TradeStatus.SIGNED, TradeStatus.SUBMITTED,
                append={"signed_payload": {"signature": "0xbb"}},
            )

    @pytest.mark.asyncio
    async def test_append_rejects_plain_columns(self, session, seed, make_trade):
        trade = await seed.trade(make_trade())
        repo = TradeQueueRepository(session)

        with pytest.raises(ValueError):
            await repo.transition(
                trade.id, TradeStatus.QUEUED, TradeStatus.QUOTED,
                append={"last_error": {"x": 1}},
            )


class TestMergeAppend:
    """Tests for merge_append."""

    def test_adds_new_keys(self):
        assert merge_append({"a": 1}, {"b": 2}) == {"a": 1, "b": 2}

    def test_same_value_is_accepted(self):
        assert merge_append({"a": 1}, {"a": 1}) == {"a": 1}

    def test_different_value_is_refused(self):
        with pytest.raises(ValueError):
            merge_append({"a": 1}, {"a": 2})


# ============================================================
# RESCHEDULE / CLAIM / BATCH TESTS
# ============================================================

class TestReschedule:
    """Tests for TradeQueueRepository.reschedule."""

    @pytest.mark.asyncio
    async def test_reschedule_keeps_status(self, session, seed, make_trade):
        trade = await seed.trade(make_trade(TradeStatus.SIGNED))
        repo = TradeQueueRepository(session)
        later = utcnow() + timedelta(minutes=5)

        assert await repo.reschedule(trade.id, TradeStatus.SIGNED, later, "timeout", "TMO_READ")

        stored = await repo.get(trade.id)
        assert stored.status == TradeStatus.SIGNED
        assert stored.attempts == 1
        assert stored.last_error == "timeout"
        assert abs((stored.next_run_at - later).total_seconds()) < 1

        events = await repo.get_events(trade.id)
        assert events[-1].is_reschedule
        assert events[-1].details["code"] == "TMO_READ"

    @pytest.mark.asyncio
    async def test_reschedule_wrong_status_is_noop(self, session, seed, make_trade):
        trade = await seed.trade(make_trade(TradeStatus.QUOTED))
        repo = TradeQueueRepository(session)

        assert not await repo.reschedule(trade.id, TradeStatus.SIGNED, utcnow(), "x")
        assert (await repo.get(trade.id)).attempts == 0


class TestClaim:
    """Tests for TradeQueueRepository.claim."""

    @pytest.mark.asyncio
    async def test_claim_is_taken_once(self, session, seed, make_trade):
        now = utcnow()
        trade = await seed.trade(make_trade(TradeStatus.QUOTED, next_run_at=now - timedelta(minutes=1)))
        repo = TradeQueueRepository(session)
        until = now + timedelta(minutes=5)

        assert await repo.claim(trade.id, TradeStatus.QUOTED, now, until)
        assert not await repo.claim(trade.id, TradeStatus.QUOTED, now + timedelta(seconds=1), until)

        stored = await repo.get(trade.id)
        assert stored.status == TradeStatus.QUOTED
        assert stored.attempts == 0
        assert abs((stored.next_run_at - until).total_seconds()) < 1
        assert await repo.get_events(trade.id) == []

    @pytest.mark.asyncio
    async def test_claim_expires(self, session, seed, make_trade):
        now = utcnow()
        trade = await seed.trade(make_trade(TradeStatus.SIGNED, next_run_at=now))
        repo = TradeQueueRepository(session)

        assert await repo.claim(trade.id, TradeStatus.SIGNED, now, now + timedelta(minutes=5))
        assert await repo.claim(trade.id, TradeStatus.SIGNED, now + timedelta(minutes=6), now + timedelta(minutes=11))

    @pytest.mark.asyncio
    async def test_claim_needs_expected_status(self, session, seed, make_trade):
        now = utcnow()
        trade = await seed.trade(make_trade(TradeStatus.SUBMITTED, next_run_at=now))

        assert not await TradeQueueRepository(session).claim(
            trade.id, TradeStatus.SIGNED, now, now + timedelta(minutes=5),
        )


class TestSelectBatch:
    """Tests for TradeQueueRepository.select_batch."""

    @pytest.mark.asyncio
    async def test_only_due_records_of_status(self, session, seed, make_trade):
        now = utcnow()
        due = await seed.trade(make_trade(next_run_at=now - timedelta(minutes=1)))
        await seed.trade(make_trade(next_run_at=now + timedelta(hours=1)))
        await seed.trade(make_trade(TradeStatus.QUOTED, next_run_at=now - timedelta(minutes=1)))

        batch = await TradeQueueRepository(session).select_batch(TradeStatus.QUEUED, 20, now=now)

        assert [t.id for t in batch] == [due.id]

    @pytest.mark.asyncio
    async def test_oldest_first_and_bounded(self, session, seed, make_trade):
        now = utcnow()
        ids = []
        for minutes in (3, 1, 2):
            trade = await seed.trade(make_trade(next_run_at=now - timedelta(minutes=minutes)))
            ids.append((minutes, trade.id))

        batch = await TradeQueueRepository(session).select_batch(TradeStatus.QUEUED, 2, now=now)

        expected = [trade_id for _, trade_id in sorted(ids, reverse=True)][:2]
        assert [t.id for t in batch] == expected

    @pytest.mark.asyncio
    async def test_due_only_false_ignores_schedule(self, session, seed, make_trade):
        now = utcnow()
        await seed.trade(make_trade(TradeStatus.SUBMITTED, next_run_at=now + timedelta(hours=1)))

        batch = await TradeQueueRepository(session).select_batch(
            TradeStatus.SUBMITTED, 20, now=now, due_only=False,
        )
        assert len(batch) == 1


# ============================================================
# AGENT / CONSULTATION TESTS
# ============================================================

class TestAgentRepository:
    """Tests for AgentRepository."""

    @pytest.mark.asyncio
    async def test_pause_once(self, session, seed, agent):
        await seed.agent(agent)
        repo = AgentRepository(session)

        assert await repo.pause(agent.id)
        assert not await repo.pause(agent.id)

        stored = await repo.get(agent.id)
        assert stored.status == AgentStatus.PAUSED
        assert stored.trading_enabled is False

    @pytest.mark.asyncio
    async def test_record_trade_increments(self, session, seed, agent):
        await seed.agent(agent)
        repo = AgentRepository(session)

        await repo.record_trade(agent.id)
        await repo.record_trade(agent.id)

        stored = await repo.get(agent.id)
        assert stored.trade_count == 2
        assert stored.last_trade_at is not None

    @pytest.mark.asyncio
    async def test_risk_fields_round_trip_as_decimal(self, session, seed, agent):
        await seed.agent(agent)
        stored = await AgentRepository(session).get(agent.id)

        assert stored.max_drawdown_pct == Decimal("15")
        assert stored.pnl_pct == Decimal("-3")


class TestConsultationRepository:
    """Tests for ConsultationRepository."""

    @pytest.mark.asyncio
    async def test_outcome_written_once(self, session, seed, agent):
        await seed.consultation(Consultation(id="c-1", agent_id=agent.id, trade_queue_id="t-1"))
        repo = ConsultationRepository(session)

        assert await repo.attach_outcome("c-1", Decimal("3000"), 70)
        assert not await repo.attach_outcome("c-1", Decimal("3100"), 80)

        stored = await repo.find_by_trade("t-1")
        assert stored.entry_price_usd == Decimal("3000")
        assert stored.confidence_at_rec == 70


class TestExchangeKeyRepository:
    """Tests for ExchangeKeyRepository."""

    @pytest.mark.asyncio
    async def test_revoked_key_hidden_from_active_lookup(self, session, seed, secret_store):
        await seed.exchange_key(secret_store, "key-1")
        await session.execute(update(ExchangeApiKeyModel).values(status="revoked"))
        await session.commit()
        repo = ExchangeKeyRepository(session)

        assert await repo.get_active("key-1") is None
        revoked = await repo.get("key-1")
        assert revoked is not None
        assert not revoked.is_active


# ============================================================
# STORE URL TESTS
# ============================================================

class TestDatabaseUrl:
    """Tests for get_database_url."""

    def test_unset_falls_back_to_sqlite(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert get_database_url() == DEFAULT_DATABASE_URL

    @pytest.mark.parametrize("url", [
        "postgresql://bot:pw@db:5432/trades",
        "postgres://bot:pw@db:5432/trades",
    ])
    def test_postgres_uses_asyncpg(self, monkeypatch, url):
        monkeypatch.setenv("DATABASE_URL", url)
        assert get_database_url() == "postgresql+asyncpg://bot:pw@db:5432/trades"

    def test_async_url_untouched(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///tmp/x.db")
        assert get_database_url() == "sqlite+aiosqlite:///tmp/x.db"
