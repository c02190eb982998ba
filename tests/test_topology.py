"""Retry tier table lookups."""

import pytest

from notifly.common.topology import DLQ_TOPIC, MAIN_TOPIC, RetryTopology, build_tiers


def test_tier_table_from_delays():
    topology = RetryTopology([0, 1, 5, 30])

    assert [tier.topic for tier in topology.tiers] == [
        MAIN_TOPIC,
        "notifications.retry.1s",
        "notifications.retry.5s",
        "notifications.retry.30s",
        DLQ_TOPIC,
    ]
    assert [tier.delay_seconds for tier in topology.delivery_tiers] == [0, 1, 5, 30]
    assert topology.dlq.is_dlq


@pytest.mark.parametrize(
    "attempt,max_attempts,expected",
    [
        (0, 3, MAIN_TOPIC),
        (1, 3, "notifications.retry.1s"),
        (3, 3, "notifications.retry.30s"),
        (4, 3, DLQ_TOPIC),
        (2, 1, DLQ_TOPIC),
        (4, 10, DLQ_TOPIC),
    ],
)
def test_tier_lookup(attempt, max_attempts, expected):
    assert RetryTopology([0, 1, 5, 30]).tier(attempt, max_attempts).topic == expected


def test_negative_attempt_is_rejected():
    with pytest.raises(ValueError):
        RetryTopology([0, 1]).tier(-1, 3)


@pytest.mark.parametrize("delays", [[], [1, 5], [0, 5, 5], [0, 30, 5]])
def test_invalid_delay_tables(delays):
    with pytest.raises(ValueError):
        build_tiers(delays)


def test_by_topic_and_consumer_groups():
    topology = RetryTopology([0, 5])

    assert topology.by_topic("notifications.retry.5s").delay_seconds == 5
    assert topology.by_topic(MAIN_TOPIC).consumer_group == "notifly-worker-notifications"
    with pytest.raises(ValueError):
        topology.by_topic("notifications.retry.7s")
