"""
=============================================================================
SETTLEMENT.PY — Settlement Operations
=============================================================================
The named operations that move money and streaks:

  create_task   → lock the stake (balance - stake)
  submit_proof  → pending → pending_review
  approve_task  → pending_review → success (balance + stake + reward)
  reject_task   → pending_review → failed  (stake goes to charity)
  expire_task   → pending → failed once the deadline has passed

Every status change is a compare-and-swap:
  UPDATE tasks SET status = :new WHERE id = :id AND user_id = :owner AND status = :expected

If the UPDATE touches 0 rows somebody else got there first (a retried
request, a second admin clicking "approve"), and the operation fails
instead of crediting twice. The balance debit works the same way
(WHERE balance >= :stake), so the wallet can never go negative.

Each operation commits on success and rolls back on any error.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

import lifecycle
from models import (
    User, Task, TaskStatus, UserPlan, Charity, CharityDonation, Squad, AdminToken
)

logger = logging.getLogger("doordue.settlement")


# =============================================================================
# ===================== ERRORS ================================================
# =============================================================================

class SettlementError(Exception):
    """Base class. status_code is what the API answers with."""
    status_code = 400
    default_message = "Operation failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(SettlementError):
    default_message = "Invalid input"

class InsufficientBalance(InvalidInput):
    default_message = "Insufficient balance for this stake"

class InvalidDeadline(InvalidInput):
    default_message = "Deadline must be in the future"

class InvalidStake(InvalidInput):
    default_message = "Stake must be a positive whole number"

class UserNotFound(SettlementError):
    status_code = 404
    default_message = "User not found"

class TaskNotFound(SettlementError):
    status_code = 404
    default_message = "Task not found"

class CharityNotFound(SettlementError):
    status_code = 404
    default_message = "Charity not found"

class InvalidState(SettlementError):
    status_code = 409
    default_message = "Task is not in a valid state for this operation"

class AlreadySettled(InvalidState):
    default_message = "Task already settled"


@contextmanager
def _atomic(db: Session):
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


# =============================================================================
# ===================== USERS =================================================
# =============================================================================

def create_user_profile(
    db: Session, email: str, password_hash: str,
    name: Optional[str] = None, is_admin: bool = False
) -> User:
    """
    Creates the profile on first authentication. If one already exists for
    this email it is returned untouched.
    """
    existing = db.query(User).filter(User.email == email).first()
    if existing:
        return existing

    user = User(
        email=email,
        password_hash=password_hash,
        name=name or email.split("@")[0],
        is_admin=is_admin,
    )
    with _atomic(db):
        db.add(user)
    db.refresh(user)
    logger.info(f"👤 Profile created for {email}")
    return user


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise UserNotFound()
    return user


def delete_user(db: Session, user_id: int):
    """
    Hard delete, admin only. Tasks and donations go with the user, and so
    do the reviewer chats they registered.
    """
    user = get_user(db, user_id)
    with _atomic(db):
        db.query(Squad).filter(Squad.created_by == user_id).update(
            {Squad.created_by: None}, synchronize_session=False
        )
        db.query(AdminToken).filter(AdminToken.user_id == user_id).delete(
            synchronize_session=False
        )
        db.delete(user)
    logger.warning(f"🗑️ User {user_id} deleted by admin")


def leaderboard(db: Session, limit: int = 50) -> list[User]:
    return (
        db.query(User)
        .order_by(User.xp.desc(), User.streak.desc(), User.id.asc())
        .limit(limit)
        .all()
    )


def set_default_charity(db: Session, user: User, charity_id: Optional[int]) -> User:
    if charity_id is not None and db.get(Charity, charity_id) is None:
        raise CharityNotFound()
    with _atomic(db):
        user.default_charity_id = charity_id
    return user


def set_plan(db: Session, user_id: int, plan: str, expires_at: Optional[datetime] = None) -> User:
    try:
        plan = UserPlan(plan)
    except ValueError:
        raise InvalidInput(f"Unknown plan '{plan}'")
    user = get_user(db, user_id)
    with _atomic(db):
        user.plan = plan.value
        user.plan_expires_at = lifecycle.to_utc_naive(expires_at) if expires_at else None
    return user


def effective_plan(user: User, now: Optional[datetime] = None) -> str:
    """Paid plans fall back to base once expired"""
    now = now or datetime.utcnow()
    if user.plan_expires_at and user.plan_expires_at <= now:
        return UserPlan.base.value
    return user.plan


# =============================================================================
# ===================== TASK QUERIES ==========================================
# =============================================================================

def get_task(db: Session, owner_id: int, task_id: int) -> Task:
    task = (
        db.query(Task)
        .filter(Task.id == task_id, Task.user_id == owner_id)
        .populate_existing()
        .first()
    )
    if task is None:
        raise TaskNotFound()
    return task


def list_tasks(db: Session, owner_id: int, status: Optional[str] = None) -> list[Task]:
    query = db.query(Task).filter(Task.user_id == owner_id)
    if status:
        query = query.filter(Task.status == TaskStatus(status).value)
    return query.order_by(Task.created_at.desc(), Task.id.desc()).all()


REVIEW_BOARD_STATUSES = (TaskStatus.pending_review, TaskStatus.success, TaskStatus.failed)


def list_review_queue(db: Session, statuses=REVIEW_BOARD_STATUSES) -> list[tuple[Task, User]]:
    """Admin board: every user's reviewed/reviewable tasks, newest first"""
    return (
        db.query(Task, User)
        .join(User, Task.user_id == User.id)
        .filter(Task.status.in_([TaskStatus(s).value for s in statuses]))
        .order_by(Task.created_at.desc(), Task.id.desc())
        .all()
    )


# =============================================================================
# ===================== INTERNAL HELPERS ======================================
# =============================================================================

def _swap_status(db: Session, owner_id: int, task_id: int, expected: TaskStatus,
                 values: dict, *criteria) -> bool:
    """Conditional status update. True if this call won the transition."""
    rows = (
        db.query(Task)
        .filter(
            Task.id == task_id,
            Task.user_id == owner_id,
            Task.status == expected.value,
            *criteria,
        )
        .update(values, synchronize_session=False)
    )
    return rows == 1


def _raise_for_state(db: Session, owner_id: int, task_id: int, expected: TaskStatus):
    task = get_task(db, owner_id, task_id)
    current = TaskStatus(task.status)
    if lifecycle.is_terminal(current):
        raise AlreadySettled(f"Task already settled as {current.value}")
    raise InvalidState(f"Task is {current.value}, expected {expected.value}")


def _locked_user(db: Session, user_id: int) -> User:
    user = (
        db.query(User)
        .filter(User.id == user_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if user is None:
        raise UserNotFound()
    return user


def _record_failure(db: Session, user: User, task: Task, now: datetime):
    """Shared by reject and expire: streak to 0, failed + 1, stake to charity"""
    user.streak = 0
    user.stats_failed = User.stats_failed + 1

    charity_id = user.default_charity_id
    if charity_id is None:
        first = db.query(Charity).order_by(Charity.id.asc()).first()
        charity_id = first.id if first else None

    db.add(CharityDonation(
        user_id=user.id,
        task_id=task.id,
        charity_id=charity_id,
        amount=task.stake,
        created_at=now,
    ))


def _summary(user: User, task: Task, credited: int = 0) -> dict:
    return {
        "task_id": task.id,
        "user_id": user.id,
        "status": task.status,
        "stake": task.stake,
        "credited": credited,
        "balance": user.balance,
        "xp": user.xp,
        "streak": user.streak,
        "longest_streak": user.longest_streak,
        "user_name": user.name,
        "notify_token": user.notify_token,
    }


# =============================================================================
# ===================== OPERATIONS ============================================
# =============================================================================

def create_task(
    db: Session, owner_id: int, objective: str, stake: int,
    deadline: datetime, now: Optional[datetime] = None
) -> int:
    """
    Locks `stake` from the owner's balance and creates a pending task.

    Raises InvalidInput (empty objective), InvalidStake, InvalidDeadline,
    InsufficientBalance or UserNotFound.
    """
    now = now or datetime.utcnow()
    objective = (objective or "").strip()
    if not objective:
        raise InvalidInput("Objective is required")
    if isinstance(stake, bool) or not isinstance(stake, int) or stake <= 0:
        raise InvalidStake()
    deadline = lifecycle.to_utc_naive(deadline)
    if deadline <= now:
        raise InvalidDeadline()

    with _atomic(db):
        debited = (
            db.query(User)
            .filter(User.id == owner_id, User.balance >= stake)
            .update(
                {
                    User.balance: User.balance - stake,
                    User.stats_staked: User.stats_staked + stake,
                },
                synchronize_session=False,
            )
        )
        if debited == 0:
            get_user(db, owner_id)
            raise InsufficientBalance()

        task = Task(
            user_id=owner_id,
            objective=objective,
            stake=stake,
            deadline=deadline,
            status=TaskStatus.pending.value,
            created_at=now,
        )
        db.add(task)
        db.flush()
        task_id = task.id

    logger.info(f"🎯 Task {task_id} created for user {owner_id} (stake {stake})")
    return task_id


def submit_proof(
    db: Session, owner_id: int, task_id: int, proof_url: str,
    now: Optional[datetime] = None
) -> Task:
    """pending → pending_review. Raises TaskNotFound or InvalidState."""
    now = now or datetime.utcnow()
    proof_url = (proof_url or "").strip()
    if not proof_url:
        raise InvalidInput("Proof reference is required")

    with _atomic(db):
        won = _swap_status(db, owner_id, task_id, TaskStatus.pending, {
            Task.status: TaskStatus.pending_review.value,
            Task.proof_url: proof_url,
            Task.submitted_at: now,
        })
        if not won:
            _raise_for_state(db, owner_id, task_id, TaskStatus.pending)

    logger.info(f"📸 Proof submitted for task {task_id}")
    return get_task(db, owner_id, task_id)


def approve_task(
    db: Session, owner_id: int, task_id: int,
    reviewer: str = "admin", now: Optional[datetime] = None
) -> dict:
    """
    pending_review → success.

    Credits stake + reward(stake), adds XP, advances the streak.
    A second call fails with AlreadySettled and credits nothing.
    """
    now = now or datetime.utcnow()

    with _atomic(db):
        won = _swap_status(db, owner_id, task_id, TaskStatus.pending_review, {
            Task.status: TaskStatus.success.value,
            Task.completed_at: now,
            Task.reviewed_at: now,
            Task.reviewed_by: reviewer,
        })
        if not won:
            _raise_for_state(db, owner_id, task_id, TaskStatus.pending_review)

        task = get_task(db, owner_id, task_id)
        user = _locked_user(db, owner_id)

        credited = lifecycle.payout(task.stake)
        new_streak = lifecycle.next_streak(
            user.last_task_completed, user.streak, now, user.timezone
        )

        user.balance = User.balance + credited
        user.xp = User.xp + lifecycle.XP_PER_SUCCESS
        user.stats_success = User.stats_success + 1
        user.stats_earned = User.stats_earned + lifecycle.reward(task.stake)
        user.streak = new_streak
        user.longest_streak = lifecycle.longest_streak(user.longest_streak, new_streak)
        user.last_task_completed = now

    logger.info(f"✅ Task {task_id} approved by {reviewer}: +{credited} to user {owner_id}")
    return _summary(user, task, credited)


def reject_task(
    db: Session, owner_id: int, task_id: int, reason: str,
    reviewer: str = "admin", now: Optional[datetime] = None
) -> dict:
    """pending_review → failed. The stake stays debited and is donated."""
    now = now or datetime.utcnow()
    reason = (reason or "").strip()
    if not reason:
        raise InvalidInput("A rejection reason is required")

    with _atomic(db):
        won = _swap_status(db, owner_id, task_id, TaskStatus.pending_review, {
            Task.status: TaskStatus.failed.value,
            Task.rejection_reason: reason,
            Task.completed_at: now,
            Task.reviewed_at: now,
            Task.reviewed_by: reviewer,
        })
        if not won:
            _raise_for_state(db, owner_id, task_id, TaskStatus.pending_review)

        task = get_task(db, owner_id, task_id)
        user = _locked_user(db, owner_id)
        _record_failure(db, user, task, now)

    logger.info(f"❌ Task {task_id} rejected by {reviewer}: {reason}")
    return _summary(user, task)


def expire_task(
    db: Session, owner_id: int, task_id: int, now: Optional[datetime] = None
) -> bool:
    """
    pending → failed when the deadline has passed without proof.

    Returns False (and changes nothing) if the deadline hasn't passed yet or
    the task already left 'pending'. Raises TaskNotFound.
    """
    now = now or datetime.utcnow()
    task = get_task(db, owner_id, task_id)
    if not lifecycle.is_overdue(task.status, task.deadline, now):
        return False

    with _atomic(db):
        won = _swap_status(
            db, owner_id, task_id, TaskStatus.pending,
            {Task.status: TaskStatus.failed.value, Task.completed_at: now},
            Task.deadline < now,
        )
        if not won:
            return False

        task = get_task(db, owner_id, task_id)
        user = _locked_user(db, owner_id)
        _record_failure(db, user, task, now)

    logger.info(f"⌛ Task {task_id} expired, {task.stake} coins forfeited")
    return True


# =============================================================================
# ===================== SEEDS =================================================
# =============================================================================

DEFAULT_CHARITIES = [
    ("charity_water", "Charity::Water", "Clean drinking water for communities in need"),
    ("akshaya_patra", "Akshaya Patra", "Mid-day meals for school children"),
    ("goonj", "Goonj", "Clothing and essentials for rural communities"),
    ("cry", "CRY", "Child rights and education"),
]


def seed_charities(db: Session):
    """Inserts the charities that don't exist yet. Runs at startup."""
    for code, name, description in DEFAULT_CHARITIES:
        if not db.query(Charity).filter(Charity.code == code).first():
            db.add(Charity(code=code, name=name, description=description))
    db.commit()
    logger.info(f"✅ {len(DEFAULT_CHARITIES)} charities verified")
