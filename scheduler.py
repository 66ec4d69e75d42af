"""
=============================================================================
SCHEDULER.PY — Deadline Scanner
=============================================================================
The proactive side of DoOrDue. Instead of waiting for the user to open the
app, we go looking for them.

Jobs:
  1. Every hour (minute 0): panic nudges for tasks due within 2 hours
  2. Every hour (minute 30): expire overdue tasks + comeback nudges

Uses APScheduler with CronTrigger. Jobs get the session factory and the
dispatcher as arguments, nothing is read from module globals.

Duplicate protection:
  Before a panic nudge goes out the task is "claimed" with a conditional
  UPDATE on last_nudged_at. Only one run can claim a task per panic window,
  so overlapping or repeated runs don't spam the user.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import or_

from database import SessionLocal
from models import User, Task, TaskStatus
from notifications import NotificationCategory, NotificationDispatcher, compose, title_for
from settlement import expire_task

logger = logging.getLogger("doordue.scheduler")

PANIC_WINDOW = timedelta(hours=2)

scheduler: Optional[AsyncIOScheduler] = None


# =============================================================================
# ===================== PANIC NUDGES ==========================================
# =============================================================================

def _claim_nudge(db, task: Task, now: datetime) -> bool:
    """Stamps last_nudged_at unless this window was already nudged"""
    window_start = task.deadline - PANIC_WINDOW
    rows = (
        db.query(Task)
        .filter(
            Task.id == task.id,
            Task.status == TaskStatus.pending.value,
            or_(Task.last_nudged_at == None, Task.last_nudged_at < window_start),  # noqa: E711
        )
        .update({Task.last_nudged_at: now}, synchronize_session=False)
    )
    db.commit()
    return rows == 1


async def check_deadlines_and_nudge(
    session_factory=SessionLocal,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> int:
    """
    Runs every hour. For every user with a linked chat and every pending
    task with now < deadline <= now + 2h, sends one panic nudge.

    Returns the number of nudges delivered.
    """
    dispatcher = dispatcher or NotificationDispatcher()
    now = now or datetime.utcnow()
    threshold = now + PANIC_WINDOW
    sent = 0

    logger.info("Running hourly check for user nudges...")
    db = session_factory()
    try:
        rows = (
            db.query(Task, User)
            .join(User, Task.user_id == User.id)
            .filter(
                User.notify_token != None,  # noqa: E711
                Task.status == TaskStatus.pending.value,
                Task.deadline > now,
                Task.deadline <= threshold,
            )
            .order_by(Task.deadline.asc())
            .all()
        )

        for task, user in rows:
            try:
                if not _claim_nudge(db, task, now):
                    continue

                body = compose(NotificationCategory.panic, user.name, rng=rng)
                ok = await dispatcher.send(
                    title_for(NotificationCategory.panic), body, user.notify_token
                )
                if ok:
                    sent += 1
                    logger.info(f"Sent panic nudge to {user.name} (task {task.id})")
            except Exception as e:
                db.rollback()
                logger.error(f"Error nudging {user.name} for task {task.id}: {e}")
    finally:
        db.close()

    logger.info(f"Sent {sent} nudges.")
    return sent


# =============================================================================
# ===================== EXPIRY + COMEBACK =====================================
# =============================================================================

async def send_comeback_nudge(
    dispatcher: NotificationDispatcher,
    token: Optional[str],
    user_name: Optional[str],
    stake: int,
    rng: Optional[random.Random] = None,
) -> bool:
    """
    Fired whenever a task lands in 'failed' (rejection or expiry).
    Sent right away; holding it until the next morning is still pending.
    """
    if not token:
        return False
    body = compose(NotificationCategory.comeback, user_name, rng=rng, stake=stake)
    ok = await dispatcher.send(title_for(NotificationCategory.comeback), body, token)
    if ok:
        logger.info(f"Sent comeback nudge to {user_name}")
    return ok


async def expire_overdue_tasks(
    session_factory=SessionLocal,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> int:
    """Moves every overdue pending task to failed. Returns how many expired."""
    dispatcher = dispatcher or NotificationDispatcher()
    now = now or datetime.utcnow()
    expired = 0

    db = session_factory()
    try:
        overdue = (
            db.query(Task.id, Task.user_id)
            .filter(Task.status == TaskStatus.pending.value, Task.deadline < now)
            .all()
        )

        for task_id, user_id in overdue:
            try:
                if not expire_task(db, user_id, task_id, now=now):
                    continue
                expired += 1
                user = db.get(User, user_id)
                task = db.get(Task, task_id)
                await send_comeback_nudge(dispatcher, user.notify_token, user.name, task.stake)
            except Exception as e:
                db.rollback()
                logger.error(f"Error expiring task {task_id}: {e}")
    finally:
        db.close()

    if expired:
        logger.info(f"⌛ {expired} overdue tasks expired")
    return expired


# =============================================================================
# ===================== SETUP =================================================
# =============================================================================

def create_scheduler(dispatcher: NotificationDispatcher, session_factory=SessionLocal) -> AsyncIOScheduler:
    """
    Builds the scheduler with both hourly jobs.
    max_instances=1 → a slow run is never overlapped by the next one.
    """
    global scheduler

    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        check_deadlines_and_nudge,
        CronTrigger(minute=0),
        kwargs={"session_factory": session_factory, "dispatcher": dispatcher},
        id="check_deadlines_and_nudge",
        name="Panic nudges",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        expire_overdue_tasks,
        CronTrigger(minute=30),
        kwargs={"session_factory": session_factory, "dispatcher": dispatcher},
        id="expire_overdue_tasks",
        name="Expire overdue tasks",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info("⏰ Scheduler configured with 2 jobs")
    return scheduler


def start_scheduler():
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler started")


def stop_scheduler():
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler stopped")
