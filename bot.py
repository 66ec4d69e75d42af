"""
=============================================================================
BOT.PY — DoOrDue Telegram bot
=============================================================================
The bot is the push channel. It doesn't keep state of its own: it reads
and writes the same database as the API.

Linking flow:
  1. In the app: POST /me/link-code → "K7Q2ZD"
  2. In Telegram: /link K7Q2ZD
  3. The chat id becomes the user's notify_token; nudges start arriving

Commands:
  /start   → welcome + status
  /link    → bind this chat to an account
  /tasks   → pending tasks with time left
  /unlink  → stop notifications
"""

import os
import logging
import secrets
import string
from datetime import datetime
from typing import Optional

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes
from sqlalchemy.orm import Session

from database import SessionLocal
from models import User, Task, TaskStatus
from lifecycle import display_status, OVERDUE

logger = logging.getLogger("doordue.bot")

BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")

LINK_CODE_LENGTH = 6
LINK_CODE_ALPHABET = string.ascii_uppercase + string.digits


# ─────────────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def get_user_by_chat(chat_id: str, db: Session) -> User | None:
    return db.query(User).filter(User.notify_token == chat_id).first()


def issue_link_code(db: Session, user: User) -> str:
    """New one-time code for /link. Replaces any previous one."""
    while True:
        code = "".join(secrets.choice(LINK_CODE_ALPHABET) for _ in range(LINK_CODE_LENGTH))
        if not db.query(User.id).filter(User.link_code == code).first():
            break
    user.link_code = code
    db.commit()
    return code


def link_chat(db: Session, code: str, chat_id: str) -> Optional[User]:
    """
    Binds chat_id to the user that owns `code` and burns the code.
    A chat can only belong to one account: any other account using it
    loses the link.
    """
    code = (code or "").strip().upper()
    if not code:
        return None

    user = db.query(User).filter(User.link_code == code).first()
    if user is None:
        return None

    db.query(User).filter(User.notify_token == chat_id, User.id != user.id).update(
        {User.notify_token: None}, synchronize_session=False
    )
    user.notify_token = chat_id
    user.link_code = None
    db.commit()
    logger.info(f"🔗 Chat linked to {user.email}")
    return user


def unlink_chat(db: Session, chat_id: str) -> bool:
    user = get_user_by_chat(chat_id, db)
    if user is None:
        return False
    user.notify_token = None
    db.commit()
    return True


def format_time_left(deadline: datetime, now: datetime) -> str:
    seconds = int((deadline - now).total_seconds())
    if seconds <= 0:
        return "overdue"
    hours, rem = divmod(seconds, 3600)
    minutes = rem // 60
    if hours >= 24:
        return f"{hours // 24}d {hours % 24}h left"
    if hours:
        return f"{hours}h {minutes}m left"
    return f"{minutes}m left"


def format_pending_tasks(tasks: list[Task], now: Optional[datetime] = None) -> str:
    """Plain-text list for /tasks"""
    now = now or datetime.utcnow()
    if not tasks:
        return "✅ No pending tasks. Create one and put some coins on it!"

    lines = [f"📝 Pending tasks ({len(tasks)})", ""]
    for t in tasks:
        state = display_status(t, now)
        if state == OVERDUE:
            icon, when = "💀", "overdue"
        elif state == TaskStatus.pending_review.value:
            icon, when = "🔍", "in review"
        else:
            icon, when = "⏳", format_time_left(t.deadline, now)
        lines.append(f"{icon} {t.objective} · {t.stake} coins · {when}")
    return "\n".join(lines)


NOT_LINKED_MSG = (
    "❌ This chat isn't linked to a DoOrDue account.\n\n"
    "Get a code in the app (Settings → Notifications) and send /link CODE."
)


# =============================================================================
# ===================== COMMANDS ==============================================
# =============================================================================

async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = str(update.effective_chat.id)
    db = SessionLocal()
    try:
        user = get_user_by_chat(chat_id, db)
        if user:
            await update.message.reply_text(
                f"👋 Hey {user.name}!\n\n"
                f"💰 {user.balance} coins\n"
                f"🔥 Streak: {user.streak} days\n"
                f"⚡ {user.xp} XP\n\n"
                f"Use /tasks to see what's due."
            )
        else:
            await update.message.reply_text(
                "👋 Welcome to DoOrDue!\n\n"
                "Stake coins on your goals. Do it, or donate it.\n\n"
                "To get deadline alerts here, send /link CODE with the code "
                "from the app."
            )
    finally:
        db.close()


async def cmd_link(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = str(update.effective_chat.id)
    if not context.args:
        await update.message.reply_text("Usage: /link CODE")
        return

    db = SessionLocal()
    try:
        user = link_chat(db, context.args[0], chat_id)
        if user:
            await update.message.reply_text(
                f"✅ Linked to {user.name}. You'll get a heads-up before deadlines."
            )
        else:
            await update.message.reply_text("❌ Invalid or used code. Generate a new one in the app.")
    finally:
        db.close()


async def cmd_tasks(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = str(update.effective_chat.id)
    db = SessionLocal()
    try:
        user = get_user_by_chat(chat_id, db)
        if not user:
            await update.message.reply_text(NOT_LINKED_MSG)
            return

        tasks = db.query(Task).filter(
            Task.user_id == user.id,
            Task.status.in_([TaskStatus.pending.value, TaskStatus.pending_review.value])
        ).order_by(Task.deadline.asc()).limit(10).all()

        await update.message.reply_text(format_pending_tasks(tasks))
    finally:
        db.close()


async def cmd_unlink(update: Update, context: ContextTypes.DEFAULT_TYPE):
    chat_id = str(update.effective_chat.id)
    db = SessionLocal()
    try:
        if unlink_chat(db, chat_id):
            await update.message.reply_text("🔕 Unlinked. No more alerts in this chat.")
        else:
            await update.message.reply_text(NOT_LINKED_MSG)
    finally:
        db.close()


# =============================================================================
# ===================== SETUP =================================================
# =============================================================================

def create_bot_application() -> Application | None:
    """Builds the bot with its handlers. None when there's no token."""
    if not BOT_TOKEN:
        logger.warning("⚠️ TELEGRAM_BOT_TOKEN not set. Bot disabled.")
        return None

    app = Application.builder().token(BOT_TOKEN).build()
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("link", cmd_link))
    app.add_handler(CommandHandler("tasks", cmd_tasks))
    app.add_handler(CommandHandler("unlink", cmd_unlink))
    return app


async def start_bot(app: Application):
    """Starts polling inside the API's event loop"""
    await app.initialize()
    await app.start()
    await app.updater.start_polling(drop_pending_updates=True)
    logger.info("🤖 Telegram bot started")


async def stop_bot(app: Application):
    await app.updater.stop()
    await app.stop()
    await app.shutdown()
    logger.info("🤖 Telegram bot stopped")
