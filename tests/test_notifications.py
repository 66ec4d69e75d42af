# tests/test_notifications.py

from __future__ import annotations

import asyncio
import random

import pytest

from notifications import (
    TEMPLATES, TITLES, NotificationCategory, NotificationDispatcher,
    compose, format_message, title_for, unique_tokens,
)

from .fakes import FakeBot


def test_every_category_has_title_and_templates():
    assert set(TEMPLATES) == set(NotificationCategory)
    assert set(TITLES) == set(NotificationCategory)
    assert all(TEMPLATES[c] for c in NotificationCategory)


def test_compose_fills_name_and_params():
    text = compose(NotificationCategory.committed, "Ravi", rng=random.Random(1),
                   stake=25, objective="Gym")
    assert "25" in text
    assert "Gym" in text


def test_compose_accepts_category_string():
    assert "Champion" in compose("panic", None, rng=random.Random(3))


def test_compose_unknown_category_has_no_fallback():
    with pytest.raises(ValueError):
        compose("procrastination", "Ravi")


def test_compose_is_random_within_fixed_set():
    seen = {compose("panic", "Ravi", rng=random.Random(seed)) for seed in range(30)}
    expected = {t.format(name="Ravi") for t in TEMPLATES[NotificationCategory.panic]}
    assert seen == expected


def test_title_for():
    assert title_for("panic") == "DoOrDue Alert"


def test_unique_tokens_keeps_order_and_drops_empties():
    assert unique_tokens(["b", "a", "", None, "b", 7]) == ["b", "a", "7"]


def test_format_message_escapes_html():
    text = format_message("<Hi>", "a & b", {"url": "/admin/verification"})
    assert text == "<b>&lt;Hi&gt;</b>\na &amp; b\n\n/admin/verification"


def test_multicast_counts_failures():
    bot = FakeBot(blocked=["2"])
    dispatcher = NotificationDispatcher(bot)
    result = asyncio.run(dispatcher.send_multicast("T", "B", ["1", "2", "3", "1"]))

    assert result.success_count == 2
    assert result.failure_count == 1
    assert result.failed_tokens == ["2"]
    assert result.to_dict() == {"successCount": 2, "failureCount": 1}
    assert [chat for chat, _ in bot.sent] == ["1", "3"]


def test_dispatcher_without_bot_fails_every_token():
    dispatcher = NotificationDispatcher(None)
    assert not dispatcher.enabled
    result = asyncio.run(dispatcher.send_multicast("T", "B", ["1", "2"]))
    assert result.success_count == 0
    assert result.failure_count == 2


def test_send_single_token():
    bot = FakeBot()
    assert asyncio.run(NotificationDispatcher(bot).send("T", "B", "42")) is True
    assert asyncio.run(NotificationDispatcher(FakeBot(blocked=["42"])).send("T", "B", "42")) is False
