"""
=============================================================================
LIFECYCLE.PY — Task Lifecycle Engine
=============================================================================
Pure rules, no database access:
  - Which status transitions are allowed
  - How much a successful task pays back (reward)
  - How the streak moves when a task succeeds
  - The derived "overdue" state shown for expired-but-unsettled tasks

States:
  pending ──proof──→ pending_review ──approve──→ success
     │                      └────────reject───→ failed
     └──────────deadline passes + expire──────→ failed

All timestamps are naive UTC datetimes, the same as the database columns.
Calendar days are computed in the user's own timezone.
"""

import math
from datetime import datetime, date
from typing import Optional

import pytz

from models import TaskStatus


# =============================================================================
# ===================== TRANSITIONS ===========================================
# =============================================================================

TERMINAL_STATUSES = frozenset({TaskStatus.success, TaskStatus.failed})

ALLOWED_TRANSITIONS = {
    TaskStatus.pending: frozenset({TaskStatus.pending_review, TaskStatus.failed}),
    TaskStatus.pending_review: frozenset({TaskStatus.success, TaskStatus.failed}),
    TaskStatus.success: frozenset(),
    TaskStatus.failed: frozenset(),
}

OVERDUE = "overdue"


def can_transition(current, target) -> bool:
    """True if a task in `current` may move to `target`"""
    return TaskStatus(target) in ALLOWED_TRANSITIONS[TaskStatus(current)]


def is_terminal(status) -> bool:
    return TaskStatus(status) in TERMINAL_STATUSES


# =============================================================================
# ===================== REWARD ================================================
# =============================================================================
# An approved task returns its stake plus reward(stake). With a rate of 1.0
# the stake is doubled: stake 30 → 60 back to the wallet.

REWARD_RATE = 1.0
XP_PER_SUCCESS = 50


def reward(stake: int) -> int:
    """Bonus paid on top of the returned stake"""
    return math.floor(stake * REWARD_RATE)


def payout(stake: int) -> int:
    """Total credited to the balance on approval"""
    return stake + reward(stake)


# =============================================================================
# ===================== TIME HELPERS ==========================================
# =============================================================================

def to_utc_naive(value: datetime) -> datetime:
    """Aware datetimes are converted to UTC; naive ones are assumed UTC already"""
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.utc).replace(tzinfo=None)


def local_day(ts: datetime, tz_name: Optional[str] = None) -> date:
    """Calendar day of a naive-UTC timestamp in the given timezone"""
    tz = pytz.timezone(tz_name or "UTC")
    return pytz.utc.localize(ts).astimezone(tz).date()


def day_diff(last: datetime, now: datetime, tz_name: Optional[str] = None) -> int:
    """Whole calendar days between two timestamps (midnight to midnight)"""
    return (local_day(now, tz_name) - local_day(last, tz_name)).days


# =============================================================================
# ===================== STREAK ================================================
# =============================================================================

def next_streak(
    last_completed: Optional[datetime],
    streak: int,
    now: datetime,
    tz_name: Optional[str] = None,
) -> int:
    """
    Streak after a successful task completed at `now`.

      - First completion ever      → max(1, streak)
      - Completed the next day     → streak + 1
      - Skipped one or more days   → 1
      - Same calendar day          → unchanged

    Failures don't go through here: they reset the streak to 0.
    """
    if last_completed is None:
        return max(1, streak)

    diff = day_diff(last_completed, now, tz_name)
    if diff == 1:
        return streak + 1
    if diff > 1:
        return 1
    return streak


def longest_streak(current_longest: int, new_streak: int) -> int:
    return max(current_longest or 0, new_streak)


# =============================================================================
# ===================== DISPLAY STATE =========================================
# =============================================================================

def is_overdue(status, deadline: datetime, now: datetime) -> bool:
    return TaskStatus(status) == TaskStatus.pending and deadline < now


def display_status(task, now: Optional[datetime] = None) -> str:
    """
    What the UI should show. A pending task past its deadline is logically
    failed but stays 'pending' in storage until expire_task runs.
    """
    now = now or datetime.utcnow()
    if is_overdue(task.status, task.deadline, now):
        return OVERDUE
    return TaskStatus(task.status).value
