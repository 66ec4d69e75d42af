# tests/test_bot.py

from __future__ import annotations

from datetime import datetime, timedelta

import bot
import settlement
from models import User


NOW = datetime(2026, 3, 10, 12, 0, 0)


def test_issue_link_code_replaces_previous(db, make_user):
    user = make_user()
    first = bot.issue_link_code(db, user)
    second = bot.issue_link_code(db, user)

    assert len(second) == bot.LINK_CODE_LENGTH
    assert user.link_code == second
    if first != second:
        assert bot.link_chat(db, first, "chat-1") is None


def test_link_chat_binds_token_and_burns_code(db, make_user):
    user = make_user()
    code = bot.issue_link_code(db, user)

    linked = bot.link_chat(db, code.lower(), "chat-1")
    assert linked.id == user.id
    assert linked.notify_token == "chat-1"
    assert linked.link_code is None
    assert bot.link_chat(db, code, "chat-2") is None


def test_link_chat_moves_chat_between_accounts(db, make_user):
    old = make_user(notify_token="chat-1")
    new = make_user()
    code = bot.issue_link_code(db, new)

    bot.link_chat(db, code, "chat-1")
    db.expire_all()
    assert db.get(User, old.id).notify_token is None
    assert db.get(User, new.id).notify_token == "chat-1"


def test_unlink_chat(db, make_user):
    user = make_user(notify_token="chat-1")
    assert bot.unlink_chat(db, "chat-1") is True
    assert user.notify_token is None
    assert bot.unlink_chat(db, "chat-1") is False


def test_format_time_left():
    assert bot.format_time_left(NOW + timedelta(minutes=45), NOW) == "45m left"
    assert bot.format_time_left(NOW + timedelta(hours=3, minutes=5), NOW) == "3h 5m left"
    assert bot.format_time_left(NOW + timedelta(days=2, hours=1), NOW) == "2d 1h left"
    assert bot.format_time_left(NOW - timedelta(minutes=1), NOW) == "overdue"


def test_format_pending_tasks(db, make_user):
    user = make_user()
    created = NOW - timedelta(days=1)
    soon = settlement.create_task(db, user.id, "Gym", 10, NOW + timedelta(hours=1), now=created)
    settlement.create_task(db, user.id, "Essay", 20, NOW - timedelta(hours=1), now=created)
    settlement.submit_proof(db, user.id, soon, "https://proofs.example/gym.jpg", now=NOW)

    tasks = settlement.list_tasks(db, user.id)
    text = bot.format_pending_tasks(tasks, NOW)

    assert text.startswith("📝 Pending tasks (2)")
    assert "Gym · 10 coins · in review" in text
    assert "Essay · 20 coins · overdue" in text


def test_format_pending_tasks_empty():
    assert "No pending tasks" in bot.format_pending_tasks([], NOW)
