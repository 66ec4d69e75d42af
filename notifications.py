"""
=============================================================================
NOTIFICATIONS.PY — Notification templates + dispatcher
=============================================================================
Two halves:

  1. TEMPLATES: what we say. One closed enum of categories, one table of
     messages per category. Every category must have an entry; there is
     no "default" fallback.

  2. DISPATCHER: how we deliver it. Push goes through the Telegram bot.
     A user's "device token" is the chat id they linked with /link.

Delivery is best-effort: no retry, no backoff. Failures are logged and
counted, never raised, so a dead chat can't break task creation or a
settlement.
"""

import html
import logging
import random
import enum
from typing import Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

logger = logging.getLogger("doordue.notifications")


# =============================================================================
# ===================== TEMPLATES =============================================
# =============================================================================

class NotificationCategory(str, enum.Enum):
    committed = "committed"               # Stake locked on a new task
    panic = "panic"                       # Deadline inside the panic window
    comeback = "comeback"                 # A task just failed
    review = "review"                     # Reviewer channel: new proof to check


TITLES = {
    NotificationCategory.committed: "Stake locked",
    NotificationCategory.panic: "DoOrDue Alert",
    NotificationCategory.comeback: "Time for a Comeback",
    NotificationCategory.review: "New proof to review",
}

TEMPLATES = {
    NotificationCategory.committed: [
        "Locked in, {name}: {stake} coins on \"{objective}\". Do it or donate it. 🔒",
        "{stake} coins are riding on \"{objective}\". No pressure, {name}. 😏",
    ],
    NotificationCategory.panic: [
        "🚨 2 HOURS LEFT 🚨 {name}, do you hate money? Get the task done!",
        "Time's ticking, {name}. Secure the bag or donate it. 💸",
    ],
    NotificationCategory.comeback: [
        "Ouch. You lost {stake} coins. But comeback seasons make the best movies. 🎬",
        "That one was rough. The next one is yours. Regain your honor, {name}. ⚔️",
    ],
    NotificationCategory.review: [
        "{name} submitted proof for \"{objective}\" ({stake} coins at stake).",
    ],
}


def compose(category, user_name: Optional[str] = None, rng: Optional[random.Random] = None,
            **params) -> str:
    """
    Picks a template for the category at random and fills it in.
    Raises ValueError for an unknown category.
    """
    category = NotificationCategory(category)
    options = TEMPLATES[category]
    chooser = rng or random
    template = chooser.choice(options)
    values = {"name": user_name or "Champion", "stake": "some", "objective": "a task"}
    values.update({k: v for k, v in params.items() if v is not None})
    return template.format(**values)


def title_for(category) -> str:
    return TITLES[NotificationCategory(category)]


# =============================================================================
# ===================== DISPATCHER ============================================
# =============================================================================

class MulticastResult:
    """Outcome of one send_multicast call"""

    def __init__(self, tokens: list[str], failed_tokens: list[str]):
        self.tokens = tokens
        self.failed_tokens = failed_tokens

    @property
    def success_count(self) -> int:
        return len(self.tokens) - len(self.failed_tokens)

    @property
    def failure_count(self) -> int:
        return len(self.failed_tokens)

    def to_dict(self) -> dict:
        return {"successCount": self.success_count, "failureCount": self.failure_count}

    def __repr__(self):
        return f"<MulticastResult ok={self.success_count} failed={self.failure_count}>"


def unique_tokens(tokens) -> list[str]:
    """Drops empties and duplicates, keeps the original order"""
    seen = set()
    out = []
    for token in tokens:
        if not token:
            continue
        token = str(token)
        if token not in seen:
            seen.add(token)
            out.append(token)
    return out


def format_message(title: str, body: str, data: Optional[dict] = None) -> str:
    text = f"<b>{html.escape(title)}</b>\n{html.escape(body)}"
    if data and data.get("url"):
        text += f"\n\n{html.escape(str(data['url']))}"
    return text


class NotificationDispatcher:
    """
    Wraps the Telegram Bot. Built once at startup and handed to whoever
    needs to send (API handlers, scheduler jobs).
    """

    def __init__(self, bot: Optional[Bot] = None):
        self.bot = bot

    @property
    def enabled(self) -> bool:
        return self.bot is not None

    async def send_multicast(self, title: str, body: str, tokens,
                             data: Optional[dict] = None) -> MulticastResult:
        targets = unique_tokens(tokens)

        if not self.bot:
            if targets:
                logger.warning("Bot not initialised, dropping notification")
            return MulticastResult(targets, list(targets))

        text = format_message(title, body, data)
        failed = []
        for token in targets:
            try:
                await self.bot.send_message(
                    chat_id=token,
                    text=text,
                    parse_mode=ParseMode.HTML,
                )
            except TelegramError as e:
                logger.error(f"Error sending to {token}: {e}")
                failed.append(token)

        result = MulticastResult(targets, failed)
        if failed:
            prune_invalid_tokens(failed)
        logger.info(f"📨 '{title}' → {result.success_count}/{len(targets)} delivered")
        return result

    async def send(self, title: str, body: str, token: str) -> bool:
        result = await self.send_multicast(title, body, [token])
        return result.failure_count == 0 and result.success_count == 1


def prune_invalid_tokens(failed_tokens: list[str]):
    # TODO: clear notify_token / admin_tokens rows for chats that blocked the bot
    logger.info(f"List of invalid tokens: {failed_tokens}")
