"""
=============================================================================
MAIN.PY — DoOrDue API
=============================================================================
Every REST endpoint lives here.

Sections:
  1. AUTH          → Register, login
  2. PROFILE       → Me, settings, Telegram link code
  3. TASKS         → Create (stake), list, submit proof, expire
  4. ADMIN         → Review board, approve/reject, users, plans, tokens
  5. SOCIAL        → Leaderboard, charities, squads
  6. NOTIFY RELAY  → POST /notify-admin

The money rules live in settlement.py; this file only translates HTTP to
those operations and schedules notifications in the background.
"""

import logging
import traceback
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

import pytz
from fastapi import FastAPI, Depends, HTTPException, status, Request, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import settlement
import squads
from database import get_db, init_db, SessionLocal
from models import User, Task, Charity, AdminToken
from schemas import (
    UserRegister, UserLogin, TokenResponse, UserResponse, UserUpdate,
    LeaderboardEntry, LinkCodeResponse, PlanUpdate,
    TaskCreate, TaskResponse, ProofSubmit, RejectRequest, SettlementResponse,
    AdminTaskResponse, CharityResponse, SquadCreate, SquadJoin, SquadResponse,
    AdminTokenCreate,
)
from auth import (
    hash_password, verify_password, create_access_token,
    get_current_user, get_current_admin, is_admin_email
)
from lifecycle import display_status
from notifications import (
    NotificationCategory, NotificationDispatcher, compose, title_for, unique_tokens
)
from scheduler import send_comeback_nudge
from bot import issue_link_code

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("doordue.api")

REVIEW_URL = "/admin/verification"


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Create tables
      2. Seed charities
      3. Start the Telegram bot (if there's a token)
      4. Build the dispatcher and start the scheduler

    Shutdown: stop scheduler and bot.
    """
    logger.info("🚀 Starting DoOrDue...")

    init_db()
    db = SessionLocal()
    try:
        settlement.seed_charities(db)
    finally:
        db.close()

    bot_app = None
    try:
        from bot import create_bot_application, start_bot
        bot_app = create_bot_application()
        if bot_app:
            await start_bot(bot_app)
    except Exception as e:
        logger.error(f"❌ Error starting bot: {e}")
        bot_app = None

    app.state.dispatcher = NotificationDispatcher(bot_app.bot if bot_app else None)

    from scheduler import create_scheduler, start_scheduler, stop_scheduler
    try:
        create_scheduler(app.state.dispatcher, SessionLocal)
        start_scheduler()
    except Exception as e:
        logger.error(f"❌ Error starting scheduler: {e}")

    logger.info("🎉 DoOrDue up")

    yield

    logger.info("🛑 Shutting down DoOrDue...")
    try:
        stop_scheduler()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")

    if bot_app:
        from bot import stop_bot
        try:
            await stop_bot(bot_app)
        except Exception as e:
            logger.error(f"Error stopping bot: {e}")

    logger.info("👋 Shutdown complete")


# ─────────────────────────────────────────────────────────────────────────────
# FASTAPI APP
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="DoOrDue API",
    description="Stake coins on your goals. Do it, or donate it.",
    version="1.0.0",
    lifespan=lifespan,
)

# Replaced in lifespan once the bot is up
app.state.dispatcher = NotificationDispatcher()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


# ─────────────────────────────────────────────────────────────────────────────
# ERROR HANDLERS
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(settlement.SettlementError)
async def settlement_error_handler(request: Request, exc: settlement.SettlementError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "type": type(exc).__name__}
    )


@app.exception_handler(squads.SquadNotFound)
async def squad_not_found_handler(request: Request, exc: squads.SquadNotFound):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything unhandled is logged with its traceback and returned as JSON"""
    error_trace = traceback.format_exc()
    logger.error(f"❌ Unhandled error on {request.url}: {exc}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


# ─────────────────────────────────────────────────────────────────────────────
# SERIALIZERS
# ─────────────────────────────────────────────────────────────────────────────

def user_to_response(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "is_admin": user.is_admin,
        "timezone": user.timezone,
        "balance": user.balance,
        "xp": user.xp,
        "streak": user.streak,
        "longest_streak": user.longest_streak,
        "last_task_completed": user.last_task_completed,
        "plan": settlement.effective_plan(user),
        "plan_expires_at": user.plan_expires_at,
        "default_charity_id": user.default_charity_id,
        "notifications_linked": bool(user.notify_token),
        "stats": user.stats,
        "created_at": user.created_at,
    }


def task_to_response(task: Task, now: Optional[datetime] = None) -> dict:
    return {
        "id": task.id,
        "user_id": task.user_id,
        "objective": task.objective,
        "stake": task.stake,
        "deadline": task.deadline,
        "status": task.status,
        "display_status": display_status(task, now),
        "proof_url": task.proof_url,
        "rejection_reason": task.rejection_reason,
        "created_at": task.created_at,
        "submitted_at": task.submitted_at,
        "completed_at": task.completed_at,
        "reviewed_at": task.reviewed_at,
    }


def squad_to_response(db: Session, squad) -> dict:
    return {
        "id": squad.id,
        "name": squad.name,
        "invite_code": squad.invite_code,
        "created_by": squad.created_by,
        "members": [LeaderboardEntry.model_validate(u) for u in squads.squad_leaderboard(db, squad.id)],
    }


def admin_tokens(db: Session) -> list[str]:
    return unique_tokens(t.token for t in db.query(AdminToken).all())


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check():
    return {
        "status": "ok",
        "app": "DoOrDue",
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat()
    }


# =============================================================================
# ===================== SECTION 1: AUTH =======================================
# =============================================================================

@app.post("/auth/register", response_model=TokenResponse, tags=["Auth"])
def register(data: UserRegister, db: Session = Depends(get_db)):
    """Creates the account and its wallet (100 coins to start)"""
    email = data.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists"
        )

    user = settlement.create_user_profile(
        db, email, hash_password(data.password),
        name=data.name, is_admin=is_admin_email(email)
    )
    token = create_access_token(user.id, user.email)
    return TokenResponse(access_token=token, user_id=user.id, name=user.name)


@app.post("/auth/login", response_model=TokenResponse, tags=["Auth"])
def login(data: UserLogin, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email.lower()).first()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Wrong email or password"
        )
    token = create_access_token(user.id, user.email)
    return TokenResponse(access_token=token, user_id=user.id, name=user.name)


# =============================================================================
# ===================== SECTION 2: PROFILE ====================================
# =============================================================================

@app.get("/me", response_model=UserResponse, tags=["Profile"])
def get_me(user: User = Depends(get_current_user)):
    return user_to_response(user)


@app.patch("/me", response_model=UserResponse, tags=["Profile"])
def update_me(data: UserUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """All fields are validated before anything is saved"""
    update_data = data.model_dump(exclude_unset=True)

    if "timezone" in update_data and update_data["timezone"] not in pytz.all_timezones_set:
        raise HTTPException(status_code=400, detail="Unknown timezone")
    charity_id = update_data.get("default_charity_id")
    if charity_id is not None and db.get(Charity, charity_id) is None:
        raise settlement.CharityNotFound()

    if "timezone" in update_data:
        user.timezone = update_data["timezone"]
    if update_data.get("name"):
        user.name = update_data["name"]

    if "default_charity_id" in update_data:
        # commits the name/timezone changes too
        settlement.set_default_charity(db, user, charity_id)
    else:
        db.commit()

    db.refresh(user)
    return user_to_response(user)


@app.post("/me/link-code", response_model=LinkCodeResponse, tags=["Profile"])
def create_link_code(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """One-time code to link a Telegram chat for push alerts"""
    code = issue_link_code(db, user)
    return LinkCodeResponse(
        link_code=code,
        instructions=f"Send /link {code} to the DoOrDue bot on Telegram"
    )


@app.delete("/me/notify-token", tags=["Profile"])
def remove_notify_token(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user.notify_token = None
    db.commit()
    return {"message": "Notifications disabled"}


# =============================================================================
# ===================== SECTION 3: TASKS ======================================
# =============================================================================

@app.post("/tasks", response_model=TaskResponse, status_code=201, tags=["Tasks"])
def create_task(
    data: TaskCreate, background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user), db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """
    Locks the stake and creates the task.
    400 if the stake is bigger than the balance or the deadline isn't in the future.
    """
    task_id = settlement.create_task(db, user.id, data.objective, data.stake, data.deadline)
    task = settlement.get_task(db, user.id, task_id)

    # Fire and forget: a failed push never blocks the task
    if user.notify_token:
        body = compose(
            NotificationCategory.committed, user.name,
            stake=task.stake, objective=task.objective
        )
        background_tasks.add_task(
            dispatcher.send_multicast,
            title_for(NotificationCategory.committed), body, [user.notify_token]
        )
    return task_to_response(task)


@app.get("/tasks", response_model=list[TaskResponse], tags=["Tasks"])
def list_tasks(
    status: Optional[str] = None,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        tasks = settlement.list_tasks(db, user.id, status)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    now = datetime.utcnow()
    return [task_to_response(t, now) for t in tasks]


@app.get("/tasks/{task_id}", response_model=TaskResponse, tags=["Tasks"])
def get_task(task_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return task_to_response(settlement.get_task(db, user.id, task_id))


@app.post("/tasks/{task_id}/proof", response_model=TaskResponse, tags=["Tasks"])
def submit_proof(
    task_id: int, data: ProofSubmit, background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user), db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """pending → pending_review, and a ping to the reviewers"""
    task = settlement.submit_proof(db, user.id, task_id, data.proof_url)

    tokens = admin_tokens(db)
    if tokens:
        body = compose(
            NotificationCategory.review, user.name,
            stake=task.stake, objective=task.objective
        )
        background_tasks.add_task(
            dispatcher.send_multicast,
            title_for(NotificationCategory.review), body, tokens,
            {"taskId": str(task.id), "url": REVIEW_URL}
        )
    return task_to_response(task)


@app.post("/tasks/{task_id}/expire", tags=["Tasks"])
def expire_task(
    task_id: int, background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user), db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Settles an overdue task as failed. No-op if the deadline hasn't passed."""
    expired = settlement.expire_task(db, user.id, task_id)
    task = settlement.get_task(db, user.id, task_id)
    if expired:
        db.refresh(user)
        background_tasks.add_task(
            send_comeback_nudge, dispatcher, user.notify_token, user.name, task.stake
        )
    return {"expired": expired, "task": TaskResponse(**task_to_response(task))}


# =============================================================================
# ===================== SECTION 4: ADMIN ======================================
# =============================================================================

@app.get("/admin/tasks", response_model=list[AdminTaskResponse], tags=["Admin"])
def admin_list_tasks(admin: User = Depends(get_current_admin), db: Session = Depends(get_db)):
    """Review board: pending_review, success and failed tasks of every user"""
    now = datetime.utcnow()
    return [
        {**task_to_response(task, now), "user_name": owner.name, "user_email": owner.email}
        for task, owner in settlement.list_review_queue(db)
    ]


@app.post("/admin/tasks/{user_id}/{task_id}/approve", response_model=SettlementResponse, tags=["Admin"])
def admin_approve(
    user_id: int, task_id: int,
    admin: User = Depends(get_current_admin), db: Session = Depends(get_db)
):
    """409 AlreadySettled if someone approved/rejected it first"""
    return settlement.approve_task(db, user_id, task_id, reviewer=admin.email)


@app.post("/admin/tasks/{user_id}/{task_id}/reject", response_model=SettlementResponse, tags=["Admin"])
def admin_reject(
    user_id: int, task_id: int, data: RejectRequest, background_tasks: BackgroundTasks,
    admin: User = Depends(get_current_admin), db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    result = settlement.reject_task(db, user_id, task_id, data.reason, reviewer=admin.email)
    background_tasks.add_task(
        send_comeback_nudge, dispatcher, result["notify_token"], result["user_name"], result["stake"]
    )
    return result


@app.get("/admin/users", response_model=list[UserResponse], tags=["Admin"])
def admin_list_users(admin: User = Depends(get_current_admin), db: Session = Depends(get_db)):
    return [user_to_response(u) for u in db.query(User).order_by(User.created_at.desc()).all()]


@app.delete("/admin/users/{user_id}", tags=["Admin"])
def admin_delete_user(user_id: int, admin: User = Depends(get_current_admin), db: Session = Depends(get_db)):
    settlement.delete_user(db, user_id)
    return {"message": "User deleted"}


@app.post("/admin/users/{user_id}/plan", response_model=UserResponse, tags=["Admin"])
def admin_set_plan(
    user_id: int, data: PlanUpdate,
    admin: User = Depends(get_current_admin), db: Session = Depends(get_db)
):
    return user_to_response(settlement.set_plan(db, user_id, data.plan, data.expires_at))


@app.post("/admin/tokens", status_code=201, tags=["Admin"])
def admin_register_token(
    data: AdminTokenCreate,
    admin: User = Depends(get_current_admin), db: Session = Depends(get_db)
):
    """Adds a chat to the reviewer channel"""
    existing = db.query(AdminToken).filter(AdminToken.token == data.token).first()
    if not existing:
        db.add(AdminToken(token=data.token, user_id=admin.id))
        db.commit()
    return {"message": "Token registered"}


# =============================================================================
# ===================== SECTION 5: SOCIAL =====================================
# =============================================================================

@app.get("/leaderboard", response_model=list[LeaderboardEntry], tags=["Social"])
def get_leaderboard(limit: int = 50, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return settlement.leaderboard(db, min(max(limit, 1), 100))


@app.get("/charities", response_model=list[CharityResponse], tags=["Social"])
def list_charities(db: Session = Depends(get_db)):
    return db.query(Charity).order_by(Charity.id.asc()).all()


@app.post("/squads", response_model=SquadResponse, status_code=201, tags=["Social"])
def create_squad(data: SquadCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    squad = squads.create_squad(db, user, data.name)
    return squad_to_response(db, squad)


@app.post("/squads/join", response_model=SquadResponse, tags=["Social"])
def join_squad(data: SquadJoin, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    squad = squads.join_squad(db, user, data.invite_code)
    return squad_to_response(db, squad)


@app.post("/squads/{squad_id}/leave", tags=["Social"])
def leave_squad(squad_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    squads.leave_squad(db, user, squad_id)
    return {"message": "Left squad"}


@app.get("/squads/{squad_id}", response_model=SquadResponse, tags=["Social"])
def get_squad(squad_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not squads.is_member(db, user, squad_id):
        raise squads.SquadNotFound()
    return squad_to_response(db, squads.get_squad(db, squad_id))


# =============================================================================
# ===================== SECTION 6: NOTIFY RELAY ===============================
# =============================================================================

@app.post("/notify-admin", tags=["Notifications"])
async def notify_admin(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """
    Body: {"title": ..., "body": ..., "taskId": ...}
    Sends the message to every registered reviewer chat.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    title, body = payload.get("title"), payload.get("body")
    if not title or not body:
        return JSONResponse(status_code=400, content={"message": "Missing title or body"})

    try:
        tokens = admin_tokens(db)
        if not tokens:
            logger.info("No admin tokens found.")
            return {"message": "No admins to notify", "successCount": 0, "failureCount": 0}

        logger.info(f"Sending notification to {len(tokens)} devices.")
        result = await dispatcher.send_multicast(
            str(title), str(body), tokens,
            {"taskId": str(payload.get("taskId") or "unknown"), "url": REVIEW_URL}
        )
        return {"success": True, **result.to_dict()}

    except Exception as e:
        logger.error(f"Notification API Error: {e}\n{traceback.format_exc()}")
        return JSONResponse(
            status_code=500,
            content={"message": "Internal Server Error", "detail": str(e)}
        )
