# tests/test_scheduler.py

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta

import scheduler
import settlement
from models import Task, TaskStatus, User
from notifications import NotificationDispatcher

from .fakes import FakeBot


NOW = datetime(2026, 3, 10, 12, 0, 0)


def _pending_task(db, user, hours_left: float, stake: int = 10) -> int:
    created = NOW - timedelta(days=1)
    return settlement.create_task(
        db, user.id, f"Task due in {hours_left}h", stake,
        NOW + timedelta(hours=hours_left), now=created,
    )


def _nudge(session_factory, bot, now=NOW):
    return asyncio.run(scheduler.check_deadlines_and_nudge(
        session_factory, NotificationDispatcher(bot), now=now, rng=random.Random(7)
    ))


# ─────────────────────────────────────────────────────────────────────────────
# Panic nudges
# ─────────────────────────────────────────────────────────────────────────────

def test_nudges_only_tasks_inside_panic_window(db, session_factory, make_user):
    user = make_user(name="Ravi", notify_token="chat-1")
    inside = _pending_task(db, user, 1)
    _pending_task(db, user, 2.5)
    _pending_task(db, user, -0.5)

    bot = FakeBot()
    sent = _nudge(session_factory, bot)

    assert sent == 1
    assert len(bot.sent_to("chat-1")) == 1
    assert "Ravi" in bot.sent_to("chat-1")[0]
    db.expire_all()
    assert db.get(Task, inside).last_nudged_at == NOW


def test_deadline_exactly_at_window_edge_is_nudged(db, session_factory, make_user):
    user = make_user(notify_token="chat-1")
    _pending_task(db, user, 2)
    assert _nudge(session_factory, FakeBot()) == 1


def test_users_without_token_are_skipped(db, session_factory, make_user):
    user = make_user(notify_token=None)
    _pending_task(db, user, 1)
    bot = FakeBot()
    assert _nudge(session_factory, bot) == 0
    assert bot.sent == []


def test_tasks_in_review_are_not_nudged(db, session_factory, make_user):
    user = make_user(notify_token="chat-1")
    task_id = _pending_task(db, user, 1)
    settlement.submit_proof(db, user.id, task_id, "https://proofs.example/x.png", now=NOW)
    assert _nudge(session_factory, FakeBot()) == 0


def test_repeated_runs_in_same_window_nudge_once(db, session_factory, make_user):
    user = make_user(notify_token="chat-1")
    _pending_task(db, user, 1.5)

    bot = FakeBot()
    assert _nudge(session_factory, bot) == 1
    assert _nudge(session_factory, bot) == 0
    assert _nudge(session_factory, bot, now=NOW + timedelta(minutes=45)) == 0
    assert len(bot.sent) == 1


def test_overlapping_runs_nudge_once(db, session_factory, make_user):
    user = make_user(notify_token="chat-1")
    _pending_task(db, user, 1)
    bot = FakeBot()
    dispatcher = NotificationDispatcher(bot)

    async def both():
        return await asyncio.gather(
            scheduler.check_deadlines_and_nudge(session_factory, dispatcher, now=NOW),
            scheduler.check_deadlines_and_nudge(session_factory, dispatcher, now=NOW),
        )

    assert sum(asyncio.run(both())) == 1
    assert len(bot.sent) == 1


def test_blocked_chat_is_not_counted(db, session_factory, make_user):
    user = make_user(notify_token="chat-blocked")
    _pending_task(db, user, 1)
    assert _nudge(session_factory, FakeBot(blocked=["chat-blocked"])) == 0


def test_each_user_gets_their_own_nudge(db, session_factory, make_user):
    a = make_user(notify_token="chat-a")
    b = make_user(notify_token="chat-b")
    _pending_task(db, a, 1)
    _pending_task(db, b, 0.5)
    bot = FakeBot()
    assert _nudge(session_factory, bot) == 2
    assert len(bot.sent_to("chat-a")) == 1
    assert len(bot.sent_to("chat-b")) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Expiry sweep + comeback
# ─────────────────────────────────────────────────────────────────────────────

def test_expire_overdue_tasks_settles_and_sends_comeback(db, session_factory, make_user):
    user = make_user(balance=100, notify_token="chat-1", streak=5)
    first = _pending_task(db, user, -1, stake=15)
    second = _pending_task(db, user, -3, stake=5)
    future = _pending_task(db, user, 4, stake=10)

    bot = FakeBot()
    expired = asyncio.run(scheduler.expire_overdue_tasks(
        session_factory, NotificationDispatcher(bot), now=NOW
    ))

    assert expired == 2
    db.expire_all()
    assert db.get(Task, first).status == TaskStatus.failed.value
    assert db.get(Task, second).status == TaskStatus.failed.value
    assert db.get(Task, future).status == TaskStatus.pending.value

    user = db.get(User, user.id)
    assert user.balance == 70
    assert user.streak == 0
    assert user.stats_failed == 2
    assert len(bot.sent_to("chat-1")) == 2


def test_expire_sweep_without_bot_still_expires(db, session_factory, make_user):
    user = make_user(notify_token="chat-1")
    _pending_task(db, user, -1)
    expired = asyncio.run(scheduler.expire_overdue_tasks(
        session_factory, NotificationDispatcher(None), now=NOW
    ))
    assert expired == 1


def test_comeback_nudge_mentions_stake():
    bot = FakeBot()
    ok = asyncio.run(scheduler.send_comeback_nudge(
        NotificationDispatcher(bot), "chat-9", "Meera", 40, rng=random.Random(0)
    ))
    assert ok is True
    text = bot.sent_to("chat-9")[0]
    assert "Comeback" in text
    assert "40" in text or "Meera" in text


def test_comeback_nudge_without_token_is_skipped():
    bot = FakeBot()
    assert asyncio.run(scheduler.send_comeback_nudge(NotificationDispatcher(bot), None, "Meera", 40)) is False
    assert bot.sent == []


# ─────────────────────────────────────────────────────────────────────────────
# Setup
# ─────────────────────────────────────────────────────────────────────────────

def test_create_scheduler_registers_hourly_jobs(session_factory):
    sched = scheduler.create_scheduler(NotificationDispatcher(), session_factory)
    jobs = {job.id: job for job in sched.get_jobs()}

    assert set(jobs) == {"check_deadlines_and_nudge", "expire_overdue_tasks"}
    for job in jobs.values():
        assert job.max_instances == 1
        assert job.kwargs["session_factory"] is session_factory
    assert not sched.running
