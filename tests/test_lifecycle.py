# tests/test_lifecycle.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

import lifecycle
from models import TaskStatus


NOW = datetime(2026, 3, 10, 12, 0, 0)


# ─────────────────────────────────────────────────────────────────────────────
# Transitions
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("pending", "pending_review", True),
        ("pending", "failed", True),
        ("pending", "success", False),
        ("pending_review", "success", True),
        ("pending_review", "failed", True),
        ("pending_review", "pending", False),
        ("success", "failed", False),
        ("failed", "success", False),
    ],
)
def test_can_transition(current, target, allowed):
    assert lifecycle.can_transition(current, target) is allowed


def test_terminal_statuses():
    assert lifecycle.is_terminal(TaskStatus.success)
    assert lifecycle.is_terminal("failed")
    assert not lifecycle.is_terminal("pending_review")


# ─────────────────────────────────────────────────────────────────────────────
# Reward
# ─────────────────────────────────────────────────────────────────────────────

def test_reward_doubles_the_stake():
    assert lifecycle.reward(30) == 30
    assert lifecycle.payout(30) == 60


def test_reward_is_floored(monkeypatch):
    monkeypatch.setattr(lifecycle, "REWARD_RATE", 0.05)
    assert lifecycle.reward(30) == 1
    assert lifecycle.reward(19) == 0
    assert lifecycle.payout(100) == 105


# ─────────────────────────────────────────────────────────────────────────────
# Streak
# ─────────────────────────────────────────────────────────────────────────────

def test_first_completion_starts_streak():
    assert lifecycle.next_streak(None, 0, NOW) == 1


def test_first_completion_keeps_existing_streak():
    assert lifecycle.next_streak(None, 4, NOW) == 4


def test_midnight_boundary_counts_as_next_day():
    last = datetime(2026, 3, 9, 23, 59)
    now = datetime(2026, 3, 10, 0, 1)
    assert lifecycle.day_diff(last, now, "UTC") == 1
    assert lifecycle.next_streak(last, 3, now, "UTC") == 4


def test_almost_24_hours_same_day_is_not_an_increment():
    last = datetime(2026, 3, 10, 0, 1)
    now = datetime(2026, 3, 10, 23, 59)
    assert lifecycle.next_streak(last, 3, now, "UTC") == 3


def test_gap_resets_streak_to_one():
    last = datetime(2026, 3, 7, 10, 0)
    now = datetime(2026, 3, 10, 10, 0)
    assert lifecycle.next_streak(last, 9, now, "UTC") == 1


def test_same_day_leaves_streak_unchanged():
    last = datetime(2026, 3, 10, 8, 0)
    assert lifecycle.next_streak(last, 5, NOW, "UTC") == 5


def test_day_boundary_uses_user_timezone():
    # 18:29 UTC = 23:59 IST, 18:31 UTC = 00:01 IST the next day
    last = datetime(2026, 3, 9, 18, 29)
    now = datetime(2026, 3, 9, 18, 31)
    assert lifecycle.day_diff(last, now, "UTC") == 0
    assert lifecycle.day_diff(last, now, "Asia/Kolkata") == 1
    assert lifecycle.next_streak(last, 2, now, "Asia/Kolkata") == 3


def test_longest_streak_is_high_water_mark():
    assert lifecycle.longest_streak(7, 3) == 7
    assert lifecycle.longest_streak(7, 8) == 8
    assert lifecycle.longest_streak(None, 1) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Time helpers + display state
# ─────────────────────────────────────────────────────────────────────────────

def test_to_utc_naive_converts_aware_datetimes():
    ist = timezone(timedelta(hours=5, minutes=30))
    aware = datetime(2026, 3, 10, 17, 30, tzinfo=ist)
    assert lifecycle.to_utc_naive(aware) == datetime(2026, 3, 10, 12, 0)
    assert lifecycle.to_utc_naive(NOW) is NOW


def test_pending_past_deadline_is_shown_as_overdue():
    task = SimpleNamespace(status="pending", deadline=NOW - timedelta(minutes=1))
    assert lifecycle.display_status(task, NOW) == lifecycle.OVERDUE


def test_pending_before_deadline_is_pending():
    task = SimpleNamespace(status="pending", deadline=NOW + timedelta(minutes=1))
    assert lifecycle.display_status(task, NOW) == "pending"


def test_reviewed_task_is_never_overdue():
    task = SimpleNamespace(status="pending_review", deadline=NOW - timedelta(days=1))
    assert lifecycle.display_status(task, NOW) == "pending_review"
