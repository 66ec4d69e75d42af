"""
=============================================================================
SCHEMAS.PY — API validation schemas (Pydantic)
=============================================================================
Models (SQLAlchemy) → the TABLES
Schemas (Pydantic)  → what the API ACCEPTS and RETURNS

Naming:
  XxxCreate   → body of a POST
  XxxUpdate   → body of a PATCH
  XxxResponse → what a GET returns
"""

from pydantic import BaseModel, Field, EmailStr
from datetime import datetime
from typing import Optional


# =============================================================================
# ===================== AUTH ==================================================
# =============================================================================

class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, description="At least 6 characters")
    name: Optional[str] = Field(default=None, max_length=100)

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    name: str


# =============================================================================
# ===================== USERS =================================================
# =============================================================================

class StatsResponse(BaseModel):
    success: int
    failed: int
    staked: int
    earned: int

class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    is_admin: bool
    timezone: str
    balance: int
    xp: int
    streak: int
    longest_streak: int
    last_task_completed: Optional[datetime] = None
    plan: str
    plan_expires_at: Optional[datetime] = None
    default_charity_id: Optional[int] = None
    notifications_linked: bool
    stats: StatsResponse
    created_at: datetime

class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    timezone: Optional[str] = None
    default_charity_id: Optional[int] = None

class LeaderboardEntry(BaseModel):
    id: int
    name: str
    xp: int
    streak: int
    longest_streak: int
    model_config = {"from_attributes": True}

class LinkCodeResponse(BaseModel):
    link_code: str
    instructions: str

class PlanUpdate(BaseModel):
    plan: str
    expires_at: Optional[datetime] = None


# =============================================================================
# ===================== TASKS =================================================
# =============================================================================

class TaskCreate(BaseModel):
    objective: str = Field(min_length=1, max_length=500)
    stake: int
    deadline: datetime

class TaskResponse(BaseModel):
    id: int
    user_id: int
    objective: str
    stake: int
    deadline: datetime
    status: str
    display_status: str
    proof_url: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None

class ProofSubmit(BaseModel):
    proof_url: str = Field(min_length=1)

class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)

class SettlementResponse(BaseModel):
    task_id: int
    user_id: int
    status: str
    stake: int
    credited: int
    balance: int
    xp: int
    streak: int
    longest_streak: int

class AdminTaskResponse(TaskResponse):
    user_name: str
    user_email: str


# =============================================================================
# ===================== SOCIAL ================================================
# =============================================================================

class CharityResponse(BaseModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    model_config = {"from_attributes": True}

class SquadCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)

class SquadJoin(BaseModel):
    invite_code: str = Field(min_length=1, max_length=10)

class SquadResponse(BaseModel):
    id: int
    name: str
    invite_code: str
    created_by: Optional[int] = None
    members: list[LeaderboardEntry]


# =============================================================================
# ===================== NOTIFICATIONS =========================================
# =============================================================================

class AdminTokenCreate(BaseModel):
    token: str = Field(min_length=1, max_length=64)
