"""Delivery worker: fallback, retry tiers, dead-lettering and duplicate safety."""

import asyncio
from uuid import uuid4

import pytest
from aiokafka.errors import KafkaConnectionError
from sqlalchemy import select

from conftest import ScriptedSender
from notifly.common.errors import ProviderError
from notifly.common.events import NotificationMessage
from notifly.common.models import (
    DeliveryAttempt,
    FailedNotification,
    NotificationRequest,
    OutboxEvent,
    RetryPolicy,
    UserChannelPreference,
)
from notifly.common.topology import DLQ_TOPIC, MAIN_TOPIC, RetryTopology
from notifly.services.dlq.service import DeadLetterService
from notifly.services.gateway.service import summarize_status
from notifly.services.worker.policies import FallbackResolver, RetryBudget
from notifly.services.worker.service import DeliveryWorker


def _unavailable():
    return ProviderError("PROVIDER_UNAVAILABLE", "provider down", retryable=True)


def _invalid_recipient():
    return ProviderError("INVALID_RECIPIENT", "malformed email", retryable=False)


def _worker(session_factory, bus, senders, order=("EMAIL",), delays=(0, 1, 5, 30), max_attempts=3, **kwargs):
    return DeliveryWorker(
        session_factory,
        senders=senders,
        kafka=bus,
        topology=RetryTopology(list(delays)),
        resolver=FallbackResolver(session_factory, list(order)),
        retry_budget=RetryBudget(session_factory, max_attempts),
        provider_timeout_seconds=kwargs.pop("provider_timeout_seconds", 1.0),
        **kwargs,
    )


def _tier0_message(session_factory, request_id: str) -> NotificationMessage:
    with session_factory() as db:
        row = db.execute(select(OutboxEvent).where(OutboxEvent.aggregate_id == request_id)).scalar_one()
        return NotificationMessage(**row.event_payload)


def _attempts(session_factory, request_id: str) -> list[DeliveryAttempt]:
    with session_factory() as db:
        return list(
            db.execute(
                select(DeliveryAttempt)
                .where(DeliveryAttempt.request_id == request_id)
                .order_by(DeliveryAttempt.replay, DeliveryAttempt.tier_attempt, DeliveryAttempt.created_at)
            ).scalars()
        )


def _dead_letters(session_factory, request_id: str) -> list[FailedNotification]:
    with session_factory() as db:
        return list(
            db.execute(select(FailedNotification).where(FailedNotification.request_id == request_id)).scalars()
        )


def _request_status(session_factory, request_id: str) -> str:
    with session_factory() as db:
        return db.get(NotificationRequest, request_id).status


async def _drive(worker, bus, message, max_passes=10):
    """Handle a message and follow every retry publish until the chain rests."""

    topic = MAIN_TOPIC
    for _ in range(max_passes):
        published_before = len(bus.published)
        await worker.handle_message(message, worker.topology.by_topic(topic))
        if len(bus.published) == published_before:
            return
        topic, message = bus.published[-1]
        if worker.topology.by_topic(topic).is_dlq:
            return


@pytest.mark.asyncio
async def test_first_channel_success_is_delivered(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender()
    worker = _worker(session_factory, bus, {"EMAIL": email})

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    attempts = _attempts(session_factory, request.request_id)
    assert [(a.channel, a.status, a.tier_attempt) for a in attempts] == [("EMAIL", "SENT", 0)]
    assert bus.published == []
    assert _request_status(session_factory, request.request_id) == "DELIVERED"


@pytest.mark.asyncio
async def test_retryable_failures_exhaust_budget_into_dead_letter(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender(always=_unavailable())
    worker = _worker(session_factory, bus, {"EMAIL": email}, max_attempts=3)

    await _drive(worker, bus, _tier0_message(session_factory, request.request_id))

    attempts = _attempts(session_factory, request.request_id)
    assert len(attempts) == 4
    assert [a.status for a in attempts] == ["RETRYING", "RETRYING", "RETRYING", "FAILED"]
    assert [a.tier_attempt for a in attempts] == [0, 1, 2, 3]
    assert bus.topics() == ["notifications.retry.1s", "notifications.retry.5s", "notifications.retry.30s"]
    assert [m.retry_count for _, m in bus.published] == [1, 2, 3]

    dead = _dead_letters(session_factory, request.request_id)
    assert len(dead) == 1
    assert dead[0].retry_count == 4
    assert dead[0].error_code == "RETRY_EXHAUSTED"
    assert dead[0].is_unrecoverable is False
    assert dead[0].status == "PENDING_REVIEW"
    assert _request_status(session_factory, request.request_id) == "FAILED"


@pytest.mark.asyncio
async def test_terminal_failure_dead_letters_without_retry(session_factory, bus, make_request):
    request = make_request()
    worker = _worker(session_factory, bus, {"EMAIL": ScriptedSender(always=_invalid_recipient())})

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    attempts = _attempts(session_factory, request.request_id)
    assert [(a.status, a.error_code) for a in attempts] == [("FAILED", "INVALID_RECIPIENT")]
    dead = _dead_letters(session_factory, request.request_id)
    assert len(dead) == 1
    assert dead[0].is_unrecoverable is True
    assert dead[0].error_code == "INVALID_RECIPIENT"
    assert dead[0].retry_count == 1
    assert bus.published == []


@pytest.mark.asyncio
async def test_fallback_stops_at_first_success(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender(always=_unavailable())
    sms = ScriptedSender()
    push = ScriptedSender()
    worker = _worker(
        session_factory,
        bus,
        {"EMAIL": email, "SMS": sms, "PUSH": push},
        order=("EMAIL", "SMS", "PUSH"),
    )

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    attempts = _attempts(session_factory, request.request_id)
    assert sorted((a.channel, a.status) for a in attempts) == [("EMAIL", "FAILED"), ("SMS", "SENT")]
    assert push.calls == []
    assert bus.published == []
    assert _dead_letters(session_factory, request.request_id) == []
    assert _request_status(session_factory, request.request_id) == "DELIVERED"


@pytest.mark.asyncio
async def test_fan_out_retries_only_failed_channels(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender()
    sms = ScriptedSender(outcomes=[_unavailable()])
    worker = _worker(
        session_factory,
        bus,
        {"EMAIL": email, "SMS": sms},
        order=("EMAIL", "SMS"),
        stop_on_first_success=False,
    )

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    assert bus.topics() == ["notifications.retry.1s"]
    retry = bus.published[0][1]
    assert retry.channels == ["SMS"]
    assert retry.retry_count == 1
    assert retry.request_id == request.request_id

    await worker.handle_message(retry, worker.topology.by_topic("notifications.retry.1s"))

    attempts = _attempts(session_factory, request.request_id)
    assert [(a.channel, a.status, a.tier_attempt) for a in attempts if a.channel == "SMS"] == [
        ("SMS", "RETRYING", 0),
        ("SMS", "SENT", 1),
    ]
    assert len(email.calls) == 1
    assert _request_status(session_factory, request.request_id) == "DELIVERED"


@pytest.mark.asyncio
async def test_duplicate_message_is_a_no_op(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender()
    worker = _worker(session_factory, bus, {"EMAIL": email})
    message = _tier0_message(session_factory, request.request_id)

    await worker.handle_message(message, worker.topology.tiers[0])
    await worker.handle_message(message, worker.topology.tiers[0])

    assert len(email.calls) == 1
    assert len(_attempts(session_factory, request.request_id)) == 1


@pytest.mark.asyncio
async def test_disabled_channel_is_skipped(session_factory, bus, make_request):
    request = make_request(user_id="user-7")
    with session_factory() as db:
        db.add(UserChannelPreference(tenant_id="tenant-a", user_id="user-7", channel="EMAIL", enabled=False))
        db.commit()
    email = ScriptedSender()
    sms = ScriptedSender()
    worker = _worker(session_factory, bus, {"EMAIL": email, "SMS": sms}, order=("EMAIL", "SMS"))

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    assert email.calls == []
    assert [(a.channel, a.status) for a in _attempts(session_factory, request.request_id)] == [("SMS", "SENT")]


@pytest.mark.asyncio
async def test_all_channels_disabled_rests_as_failed(session_factory, bus, make_request):
    request = make_request(user_id="user-8")
    with session_factory() as db:
        db.add(UserChannelPreference(tenant_id="tenant-a", user_id="user-8", channel="EMAIL", enabled=False))
        db.commit()
    worker = _worker(session_factory, bus, {"EMAIL": ScriptedSender()})

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    attempts = _attempts(session_factory, request.request_id)
    assert [(a.channel, a.status, a.error_code) for a in attempts] == [("EMAIL", "FAILED", "CHANNEL_DISABLED")]
    dead = _dead_letters(session_factory, request.request_id)
    assert [(d.error_code, d.is_unrecoverable) for d in dead] == [("CHANNEL_DISABLED", True)]
    assert bus.published == []
    assert _request_status(session_factory, request.request_id) == "FAILED"


@pytest.mark.asyncio
async def test_channel_without_provider_rests_as_failed(session_factory, bus, make_request):
    request = make_request(channels=["WEBHOOK"])
    worker = _worker(session_factory, bus, {"EMAIL": ScriptedSender()})

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    attempts = _attempts(session_factory, request.request_id)
    assert [(a.channel, a.error_code) for a in attempts] == [("WEBHOOK", "CHANNEL_DISABLED")]
    assert summarize_status(None, attempts) == "FAILED"


@pytest.mark.asyncio
async def test_request_channels_narrow_fallback_order(session_factory, bus, make_request):
    request = make_request(channels=["SMS"])
    email = ScriptedSender()
    sms = ScriptedSender()
    worker = _worker(session_factory, bus, {"EMAIL": email, "SMS": sms}, order=("EMAIL", "SMS"))

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    assert email.calls == []
    assert len(sms.calls) == 1


@pytest.mark.asyncio
async def test_provider_timeout_is_retryable(session_factory, bus, make_request):
    request = make_request()
    worker = _worker(
        session_factory,
        bus,
        {"EMAIL": ScriptedSender(delay=0.5)},
        provider_timeout_seconds=0.01,
    )

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    attempts = _attempts(session_factory, request.request_id)
    assert [(a.status, a.error_code) for a in attempts] == [("RETRYING", "PROVIDER_TIMEOUT")]
    assert bus.topics() == ["notifications.retry.1s"]


@pytest.mark.asyncio
async def test_failed_retry_publish_rolls_back_the_pass(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender(outcomes=[_unavailable(), _unavailable()])
    worker = _worker(session_factory, bus, {"EMAIL": email})
    message = _tier0_message(session_factory, request.request_id)

    bus.fail = True
    with pytest.raises(KafkaConnectionError):
        await worker.handle_message(message, worker.topology.tiers[0])
    assert _attempts(session_factory, request.request_id) == []

    bus.fail = False
    await worker.handle_message(message, worker.topology.tiers[0])
    assert [a.status for a in _attempts(session_factory, request.request_id)] == ["RETRYING"]
    assert bus.topics() == ["notifications.retry.1s"]


@pytest.mark.asyncio
async def test_tier_table_exhaustion_fails_in_the_last_tier(session_factory, bus, make_request):
    request = make_request()
    worker = _worker(
        session_factory,
        bus,
        {"EMAIL": ScriptedSender(always=_unavailable())},
        delays=(0, 1),
        max_attempts=3,
    )

    await _drive(worker, bus, _tier0_message(session_factory, request.request_id))

    assert bus.topics() == ["notifications.retry.1s"]
    attempts = _attempts(session_factory, request.request_id)
    assert [(a.status, a.tier_attempt) for a in attempts] == [("RETRYING", 0), ("FAILED", 1)]

    dead = _dead_letters(session_factory, request.request_id)
    assert len(dead) == 1
    assert dead[0].error_code == "RETRY_EXHAUSTED"
    assert dead[0].retry_count == 2
    assert dead[0].channel == "EMAIL"
    assert _request_status(session_factory, request.request_id) == "FAILED"
    assert summarize_status(None, attempts) == "FAILED"


@pytest.mark.asyncio
async def test_tenant_budget_beyond_tier_table_still_rests_failed(session_factory, bus, make_request):
    request = make_request()
    with session_factory() as db:
        db.add(RetryPolicy(tenant_id="tenant-a", event_type="order.shipped", max_attempts=5))
        db.commit()
    worker = _worker(session_factory, bus, {"EMAIL": ScriptedSender(always=_unavailable())}, max_attempts=3)

    await _drive(worker, bus, _tier0_message(session_factory, request.request_id))

    attempts = _attempts(session_factory, request.request_id)
    assert [a.status for a in attempts] == ["RETRYING", "RETRYING", "RETRYING", "FAILED"]
    assert DLQ_TOPIC not in bus.topics()
    assert [d.error_code for d in _dead_letters(session_factory, request.request_id)] == ["RETRY_EXHAUSTED"]
    assert summarize_status(None, attempts) == "FAILED"


@pytest.mark.asyncio
async def test_dlq_topic_message_is_parked_once(session_factory, bus, make_request):
    request = make_request()
    topology = RetryTopology([0, 1])
    message = _tier0_message(session_factory, request.request_id).next_attempt(DLQ_TOPIC, ["EMAIL"])
    dead_letters = DeadLetterService(session_factory, kafka=bus, topology=topology)

    await dead_letters.handle_dead_letter(message)
    await dead_letters.handle_dead_letter(message)

    dead = _dead_letters(session_factory, request.request_id)
    assert len(dead) == 1
    assert dead[0].error_code == "RETRY_EXHAUSTED"
    assert dead[0].retry_count == 1
    assert dead[0].channel == "EMAIL"
    assert _request_status(session_factory, request.request_id) == "FAILED"


@pytest.mark.asyncio
async def test_fallback_terminal_failure_is_held_while_next_channel_retries(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender(always=_invalid_recipient())
    sms = ScriptedSender(outcomes=[_unavailable()])
    worker = _worker(session_factory, bus, {"EMAIL": email, "SMS": sms}, order=("EMAIL", "SMS"))

    await worker.handle_message(_tier0_message(session_factory, request.request_id), worker.topology.tiers[0])

    assert _dead_letters(session_factory, request.request_id) == []
    retry = bus.published[0][1]
    assert retry.channels == ["SMS"]
    assert [item["channel"] for item in retry.deferred_failures] == ["EMAIL"]

    await worker.handle_message(retry, worker.topology.by_topic(bus.published[0][0]))

    attempts = _attempts(session_factory, request.request_id)
    assert sorted((a.tier_attempt, a.channel, a.status) for a in attempts) == [
        (0, "EMAIL", "FAILED"),
        (0, "SMS", "RETRYING"),
        (1, "SMS", "SENT"),
    ]
    assert _dead_letters(session_factory, request.request_id) == []
    assert _request_status(session_factory, request.request_id) == "DELIVERED"


@pytest.mark.asyncio
async def test_fallback_held_failure_is_parked_when_chain_fails(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender(always=_invalid_recipient())
    sms = ScriptedSender(always=_unavailable())
    worker = _worker(session_factory, bus, {"EMAIL": email, "SMS": sms}, order=("EMAIL", "SMS"), max_attempts=1)

    await _drive(worker, bus, _tier0_message(session_factory, request.request_id))

    dead = sorted(_dead_letters(session_factory, request.request_id), key=lambda row: row.error_code)
    assert [(d.channel, d.error_code, d.is_unrecoverable) for d in dead] == [
        ("EMAIL", "INVALID_RECIPIENT", True),
        ("SMS", "RETRY_EXHAUSTED", False),
    ]
    assert _request_status(session_factory, request.request_id) == "FAILED"


@pytest.mark.asyncio
async def test_unknown_request_is_skipped(session_factory, bus):
    worker = _worker(session_factory, bus, {"EMAIL": ScriptedSender()})
    message = NotificationMessage(
        tenant_id="tenant-a",
        request_id=str(uuid4()),
        event_type="order.shipped",
        payload={"recipient": {"email": "a@example.com"}},
        original_topic=MAIN_TOPIC,
        correlation_id="corr-1",
    )

    await worker.handle_message(message, worker.topology.tiers[0])

    assert _attempts(session_factory, message.request_id) == []


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_send_once(session_factory, bus, make_request):
    request = make_request()
    email = ScriptedSender(delay=0.01)
    worker = _worker(session_factory, bus, {"EMAIL": email})
    message = _tier0_message(session_factory, request.request_id)

    await asyncio.gather(
        worker.handle_message(message, worker.topology.tiers[0]),
        worker.handle_message(message, worker.topology.tiers[0]),
    )

    assert len(email.calls) == 1
    assert len(_attempts(session_factory, request.request_id)) == 1
