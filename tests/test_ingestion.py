import asyncio
import json
import time
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import httpx
import pytest

from courier.models import Client, Conversation, Message
from courier.schemas.message import InboundEvent
from courier.services.batcher import MessageBatcher
from courier.services.delivery_queue import DeliveryQueue
from courier.services.delivery_worker import DeliveryWorkerPool
from courier.services.forward_service import build_job_handlers
from courier.services.ingestion_service import BotNotFoundError, ingest_message
from courier.services.transport import TransportRegistry
from courier.services.webhook_poster import WebhookPoster

JID = "5215512345678@s.whatsapp.net"


def _event(external_id, content="hello", participant=JID, **overrides):
    values = {
        "conversationParticipantId": participant,
        "externalId": external_id,
        "type": "TEXT",
        "content": content,
        "pushName": "Ana",
    }
    values.update(overrides)
    return InboundEvent(**values)


def _recording_poster(status_code=200):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(status_code)

    async def no_sleep(_seconds):
        return None

    poster = WebhookPoster(max_attempts=3, sleep_func=no_sleep, transport=httpx.MockTransport(handler))
    return poster, requests


async def _run_jobs(queue, pool):
    outcomes = []
    while True:
        job = await queue.reserve(timeout=0)
        if job is None:
            return outcomes
        outcomes.append(await pool.process_job(job))


@pytest.fixture
def queue(fake_redis):
    return DeliveryQueue(fake_redis, namespace="test:queue")


@pytest.fixture
def batcher(fake_redis, queue, session_factory):
    return MessageBatcher(
        fake_redis, queue, session_factory=session_factory, min_ttl_seconds=60, max_wait_seconds=0, sweep_grace_seconds=0
    )


class TestIngestMessage:
    def test_new_participant_immediate_delivery(self, db_session, session_factory, make_bot, queue, batcher):
        bot = make_bot(response_delay=0, webhook_url="https://flows.example.com/hook")
        bot_id = bot.id
        poster, requests = _recording_poster()
        pool = DeliveryWorkerPool(queue, build_job_handlers(poster, session_factory), concurrency=1)

        async def run():
            result = await ingest_message(db_session, bot_id, _event("abc123"), queue=queue, batcher=batcher)
            stats_after_ingest = await queue.stats()
            outcomes = await _run_jobs(queue, pool)
            return result, stats_after_ingest, outcomes

        result, stats_after_ingest, outcomes = asyncio.run(run())

        assert result.status == "enqueued"
        assert result.is_new_contact is True
        assert stats_after_ingest["waiting"] == 1
        assert outcomes == ["completed"]
        assert len(requests) == 1

        body = json.loads(requests[0].content)
        assert body["externalId"] == "abc123"
        assert body["content"] == "hello"
        assert body["from"] == JID
        assert body["type"] == "TEXT"
        assert body["isNewContact"] is True
        assert body["messageId"] == str(result.message_id)
        assert body["sessionId"] == str(result.conversation_id)

        db = session_factory()
        try:
            conversation = db.query(Conversation).one()
            assert conversation.identifier == JID
            assert conversation.name == "Ana"
            message = db.query(Message).one()
            assert message.external_id == "abc123"
            assert message.forwarded_at is not None
            assert message.is_processed is True
        finally:
            db.close()

    def test_three_events_with_delay_become_one_batch(self, db_session, session_factory, make_bot, queue, batcher):
        bot = make_bot(response_delay=10)
        bot_id = bot.id
        poster, requests = _recording_poster()
        pool = DeliveryWorkerPool(queue, build_job_handlers(poster, session_factory), concurrency=1)

        async def run():
            results = []
            for external_id in ("m1", "m2", "m3"):
                results.append(
                    await ingest_message(db_session, bot_id, _event(external_id, content=external_id), queue=queue, batcher=batcher)
                )
            immediate = await queue.stats()
            timers = batcher.active_timers
            # Ten seconds of inactivity, as seen by the restart sweep.
            await batcher.close()
            await batcher.sweep_overdue(now=time.time() + 10)
            outcomes = await _run_jobs(queue, pool)
            return results, immediate, timers, outcomes

        results, immediate, timers, outcomes = asyncio.run(run())

        assert [r.status for r in results] == ["batched", "batched", "batched"]
        assert [r.is_new_contact for r in results] == [True, False, False]
        assert immediate["waiting"] == 0
        assert timers == 1
        assert outcomes == ["completed"]
        assert len(requests) == 1

        body = json.loads(requests[0].content)
        assert body["type"] == "BATCH"
        assert body["messageCount"] == 3
        assert [m["externalId"] for m in body["messages"]] == ["m1", "m2", "m3"]

        db = session_factory()
        try:
            assert all(m.forwarded_at is not None for m in db.query(Message).all())
        finally:
            db.close()

    def test_duplicate_event_is_not_redelivered(self, db_session, make_bot, queue, batcher):
        bot = make_bot()
        bot_id = bot.id

        async def run():
            first = await ingest_message(db_session, bot_id, _event("abc123"), queue=queue, batcher=batcher)
            second = await ingest_message(db_session, bot_id, _event("abc123"), queue=queue, batcher=batcher)
            return first, second, await queue.stats()

        first, second, stats = asyncio.run(run())

        assert first.status == "enqueued"
        assert second.status == "duplicate"
        assert second.message_id == first.message_id
        assert stats["waiting"] == 1
        assert db_session.query(Message).count() == 1

    def test_handled_contact_is_persisted_without_delivery(self, db_session, make_bot, queue, batcher):
        bot = make_bot()
        bot_id = bot.id
        db_session.add(Client(bot_id=bot_id, jid=JID, status="ATTENDED"))
        db_session.commit()

        async def run():
            result = await ingest_message(db_session, bot_id, _event("abc123"), queue=queue, batcher=batcher)
            return result, await queue.stats()

        result, stats = asyncio.run(run())

        assert result.status == "handled_by_human"
        assert stats == {"waiting": 0, "active": 0, "delayed": 0, "dead": 0}
        assert batcher.active_timers == 0
        assert db_session.query(Message).filter(Message.external_id == "abc123").count() == 1

    def test_plain_number_participant_is_normalized(self, db_session, make_bot, queue, batcher):
        bot = make_bot()
        bot_id = bot.id

        asyncio.run(
            ingest_message(db_session, bot_id, _event("abc123", participant="5215512345678"), queue=queue, batcher=batcher)
        )

        assert db_session.query(Conversation).one().identifier == JID

    def test_unknown_bot_raises(self, db_session, queue, batcher):
        with pytest.raises(BotNotFoundError):
            asyncio.run(ingest_message(db_session, uuid4(), _event("abc123"), queue=queue, batcher=batcher))


class TestTransportRegistry:
    def test_register_and_lookup(self):
        registry = TransportRegistry()
        session = Mock(is_ready=True)
        bot_id = uuid4()

        registry.register(bot_id, session)

        assert registry.get(bot_id) is session
        assert registry.get(str(bot_id)) is session
        assert len(registry) == 1
        assert registry.unregister(bot_id) is session
        assert registry.get(bot_id) is None

    def test_message_received_ingests(self, session_factory, make_bot, queue, batcher):
        bot = make_bot()
        bot_id = bot.id
        registry = TransportRegistry(queue=queue, batcher=batcher, session_factory=session_factory)

        result = asyncio.run(
            registry.message_received(
                bot_id,
                {"remoteJid": JID, "externalId": "abc123", "type": "text", "content": "hello", "pushName": "Ana"},
            )
        )

        assert result.status == "enqueued"

    def test_message_received_swallows_failures(self, session_factory, make_bot):
        bot = make_bot()
        queue = Mock()
        queue.enqueue = AsyncMock(side_effect=RuntimeError("queue down"))
        registry = TransportRegistry(queue=queue, batcher=Mock(), session_factory=session_factory)

        result = asyncio.run(registry.message_received(bot.id, _event("abc123")))

        assert result is None

    def test_message_received_drops_unknown_type(self, session_factory):
        registry = TransportRegistry(queue=Mock(), batcher=Mock(), session_factory=session_factory)

        result = asyncio.run(
            registry.message_received(uuid4(), {"from": JID, "externalId": "x1", "type": "STICKER"})
        )

        assert result is None

    def test_message_received_unknown_bot_is_logged(self, session_factory, queue, batcher):
        registry = TransportRegistry(queue=queue, batcher=batcher, session_factory=session_factory)

        assert asyncio.run(registry.message_received(uuid4(), _event("abc123"))) is None
