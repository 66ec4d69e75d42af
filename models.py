"""
=============================================================================
MODELS.PY — Ledger Store tables
=============================================================================
Each class = one table. Each attribute = one column.

RELATIONSHIPS:
  USER
  ├── tasks[] ──→ donation (when the stake is forfeited)
  ├── squad_memberships[] ──→ squad
  └── default_charity

  A task belongs to exactly one user and is only ever reached through its
  owner: every query filters on (user_id, task_id).
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, Text, DateTime, ForeignKey,
    UniqueConstraint
)
from sqlalchemy.orm import relationship
from database import Base
import enum


# =============================================================================
# ===================== ENUMS =================================================
# =============================================================================

class TaskStatus(str, enum.Enum):
    """Stored task state. 'overdue' is never stored, see lifecycle.display_status"""
    pending = "pending"                  # Created, stake locked
    pending_review = "pending_review"    # Proof submitted, waiting for an admin
    success = "success"                  # Approved, stake returned + reward
    failed = "failed"                    # Rejected or expired, stake forfeited

class UserPlan(str, enum.Enum):
    base = "base"
    pro = "pro"
    elite = "elite"


STARTING_BALANCE = 100


# =============================================================================
# ===================== TABLE 1: USERS ========================================
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # ── Identity ──
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(100), nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    timezone = Column(String(50), default="Asia/Kolkata", nullable=False)
    # timezone → the streak counts calendar days in the user's own timezone

    # ── Wallet ──
    balance = Column(Integer, default=STARTING_BALANCE, nullable=False)
    # balance → DueCoins, never negative (debits are conditional updates)

    # ── Gamification ──
    xp = Column(Integer, default=0, nullable=False)
    streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    last_task_completed = Column(DateTime, nullable=True)

    # ── Plan ──
    plan = Column(String(20), default=UserPlan.base.value, nullable=False)
    plan_expires_at = Column(DateTime, nullable=True)

    default_charity_id = Column(Integer, ForeignKey("charities.id"), nullable=True)

    # ── Push ──
    notify_token = Column(String(64), nullable=True, index=True)
    # notify_token → Telegram chat id that receives nudges
    link_code = Column(String(10), unique=True, nullable=True)
    # link_code → one-time code the user sends to the bot with /link

    # ── Stats ──
    stats_success = Column(Integer, default=0, nullable=False)
    stats_failed = Column(Integer, default=0, nullable=False)
    stats_staked = Column(Integer, default=0, nullable=False)
    stats_earned = Column(Integer, default=0, nullable=False)

    # ── Timestamps ──
    created_at = Column(DateTime, default=datetime.utcnow)
    last_active = Column(DateTime, default=datetime.utcnow)

    tasks = relationship("Task", back_populates="user", cascade="all, delete-orphan")
    donations = relationship("CharityDonation", back_populates="user", cascade="all, delete-orphan")
    squad_memberships = relationship("SquadMember", back_populates="user", cascade="all, delete-orphan")
    default_charity = relationship("Charity")

    @property
    def stats(self) -> dict:
        return {
            "success": self.stats_success,
            "failed": self.stats_failed,
            "staked": self.stats_staked,
            "earned": self.stats_earned,
        }


# =============================================================================
# ===================== TABLE 2: TASKS ========================================
# =============================================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    objective = Column(Text, nullable=False)
    stake = Column(Integer, nullable=False)
    # stake → fixed at creation, never updated afterwards
    deadline = Column(DateTime, nullable=False)
    status = Column(String(20), default=TaskStatus.pending.value, nullable=False, index=True)

    # ── Review ──
    proof_url = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    reviewed_by = Column(String(100), nullable=True)

    # ── Timestamps ──
    created_at = Column(DateTime, default=datetime.utcnow)
    submitted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    last_nudged_at = Column(DateTime, nullable=True)
    # last_nudged_at → set when the panic nudge is claimed, one per window

    user = relationship("User", back_populates="tasks")
    donation = relationship("CharityDonation", back_populates="task", uselist=False)


# =============================================================================
# ===================== TABLE 3: CHARITIES ====================================
# =============================================================================

class Charity(Base):
    __tablename__ = "charities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)


class CharityDonation(Base):
    """One row per forfeited stake"""
    __tablename__ = "charity_donations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    task_id = Column(Integer, ForeignKey("tasks.id"), unique=True, nullable=False)
    charity_id = Column(Integer, ForeignKey("charities.id"), nullable=True)
    amount = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="donations")
    task = relationship("Task", back_populates="donation")
    charity = relationship("Charity")


# =============================================================================
# ===================== TABLE 4: SQUADS =======================================
# =============================================================================

class Squad(Base):
    __tablename__ = "squads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    invite_code = Column(String(6), unique=True, nullable=False, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    members = relationship("SquadMember", back_populates="squad", cascade="all, delete-orphan")


class SquadMember(Base):
    __tablename__ = "squad_members"
    __table_args__ = (UniqueConstraint("squad_id", "user_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    squad_id = Column(Integer, ForeignKey("squads.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    joined_at = Column(DateTime, default=datetime.utcnow)

    squad = relationship("Squad", back_populates="members")
    user = relationship("User", back_populates="squad_memberships")


# =============================================================================
# ===================== TABLE 5: ADMIN TOKENS =================================
# =============================================================================
# Push targets of the reviewer channel (who gets pinged when proof arrives).

class AdminToken(Base):
    __tablename__ = "admin_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String(64), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
