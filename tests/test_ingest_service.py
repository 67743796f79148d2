import asyncio
from unittest.mock import AsyncMock

import pytest

from spin_agent.models import Contact, Conversation, Message
from spin_agent.services.dedup_service import IdempotencyGuard
from spin_agent.services.errors import StoreUnavailableError
from spin_agent.services.ingest_service import InboundMessage, build_inbound_message_id, ingest_message
from spin_agent.services.state_store import StateStore, dedupe_key


def inbound(message_id="MSG-1", text="Oi", sender="5511999990000", push_name="Ana"):
    return InboundMessage(provider_message_id=message_id, sender=sender, text=text, push_name=push_name, timestamp=1_760_000_000)


class TestBuildInboundMessageId:
    def test_provider_id_wins(self):
        assert build_inbound_message_id(" ABC ", "jid", 1, "oi") == "ABC"

    def test_jid_and_timestamp(self):
        assert build_inbound_message_id(None, "5511@s.whatsapp.net", 1700, "oi") == "5511@s.whatsapp.net:1700"

    def test_jid_and_text_hash_is_stable(self):
        first = build_inbound_message_id(None, "jid", None, "oi")
        assert first == build_inbound_message_id(None, "jid", None, "oi")
        assert first != build_inbound_message_id(None, "jid", None, "olá")


class TestIngestMessage:
    @pytest.mark.asyncio
    async def test_accepts_and_queues(self, db, account, guard, coalescer, scheduler):
        result = await ingest_message(
            db, account=account, message=inbound(), guard=guard, coalescer=coalescer, correlation_id="c1"
        )

        assert result.duplicate is False
        assert result.opened_window is True
        assert len(scheduler.calls) == 1
        assert scheduler.calls[0]["session_id"] == str(result.session_id)

        contact = db.query(Contact).one()
        assert contact.address == "5511999990000"
        assert contact.name == "Ana"
        conversation = db.get(Conversation, result.session_id)
        assert conversation.account_id == account.id
        assert conversation.last_message_at is not None
        message = db.query(Message).one()
        assert message.role == "user"
        assert message.correlation_id == "c1"
        assert message.message_metadata["push_name"] == "Ana"
        assert await coalescer.pending_count(str(result.session_id)) == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, db, account, guard, coalescer, scheduler):
        await ingest_message(db, account=account, message=inbound(), guard=guard, coalescer=coalescer, correlation_id="c1")
        again = await ingest_message(db, account=account, message=inbound(), guard=guard, coalescer=coalescer, correlation_id="c2")

        assert again.duplicate is True
        assert db.query(Message).count() == 1
        assert len(scheduler.calls) == 1

    @pytest.mark.asyncio
    async def test_same_contact_reuses_conversation(self, db, account, guard, coalescer):
        first = await ingest_message(db, account=account, message=inbound("m1"), guard=guard, coalescer=coalescer, correlation_id="c1")
        second = await ingest_message(
            db, account=account, message=inbound("m2", push_name="Ana Souza"), guard=guard, coalescer=coalescer, correlation_id="c2"
        )

        assert first.session_id == second.session_id
        assert second.opened_window is False
        assert db.query(Contact).one().name == "Ana Souza"

    @pytest.mark.asyncio
    async def test_lost_marker_falls_back_to_stored_messages(self, db, account, guard, coalescer, store):
        await ingest_message(db, account=account, message=inbound(), guard=guard, coalescer=coalescer, correlation_id="c1")
        await store.delete(dedupe_key("MSG-1"))

        again = await ingest_message(db, account=account, message=inbound(), guard=guard, coalescer=coalescer, correlation_id="c2")

        assert again.duplicate is True
        assert db.query(Message).count() == 1

    @pytest.mark.asyncio
    async def test_store_outage_rolls_back_and_releases_marker(self, db, account, guard, coalescer, store):
        coalescer.on_inbound_accepted = AsyncMock(side_effect=StoreUnavailableError("down"))

        with pytest.raises(StoreUnavailableError):
            await ingest_message(db, account=account, message=inbound(), guard=guard, coalescer=coalescer, correlation_id="c1")

        assert db.query(Message).count() == 0
        assert await store.get(dedupe_key("MSG-1")) is None


class TestConcurrentRedelivery:
    @pytest.mark.asyncio
    async def test_same_id_delivered_at_once_is_stored_and_queued_once(self, db, account, guard, coalescer, scheduler):
        results = await asyncio.gather(
            *[
                ingest_message(db, account=account, message=inbound(), guard=guard, coalescer=coalescer, correlation_id=f"c{i}")
                for i in range(5)
            ]
        )

        accepted = [result for result in results if not result.duplicate]
        assert len(accepted) == 1
        assert db.query(Message).count() == 1
        assert await coalescer.pending_count(str(accepted[0].session_id)) == 1
        assert len(scheduler.calls) == 1

    @pytest.mark.asyncio
    async def test_unique_constraint_decides_without_marker(self, db, account, coalescer, monkeypatch):
        async def unavailable(*args, **kwargs):
            await asyncio.sleep(0)
            raise StoreUnavailableError("marker store down")

        marker_store = AsyncMock(spec=StateStore)
        marker_store.set_if_absent.side_effect = unavailable
        blind_guard = IdempotencyGuard(marker_store, ttl_seconds=600)
        # every delivery passes the durable lookup before any row lands
        monkeypatch.setattr("spin_agent.services.dedup_service.is_known_message", lambda db, provider_message_id: False)

        results = await asyncio.gather(
            *[
                ingest_message(db, account=account, message=inbound(), guard=blind_guard, coalescer=coalescer, correlation_id=f"c{i}")
                for i in range(3)
            ]
        )

        accepted = [result for result in results if not result.duplicate]
        assert len(accepted) == 1
        assert db.query(Message).count() == 1
        assert await coalescer.pending_count(str(accepted[0].session_id)) == 1
