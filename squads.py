"""
=============================================================================
SQUADS.PY — Groups of friends
=============================================================================
A squad is a name, a 6-character invite code and a member list.

Invite codes are random. Uniqueness is checked against the database and
a new code is drawn on collision. With 36^6 (~2 billion) codes a second
attempt is already rare, but the loop is capped anyway.
"""

import logging
import random
import string
from typing import Optional

from sqlalchemy.orm import Session

from models import Squad, SquadMember, User

logger = logging.getLogger("doordue.squads")

INVITE_CODE_LENGTH = 6
INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 20

_sysrand = random.SystemRandom()


class SquadNotFound(Exception):
    status_code = 404

    def __init__(self, message: str = "Squad not found"):
        self.message = message
        super().__init__(message)


def generate_invite_code(rng: Optional[random.Random] = None) -> str:
    chooser = rng or _sysrand
    return "".join(chooser.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def _code_taken(db: Session, code: str) -> bool:
    return db.query(Squad.id).filter(Squad.invite_code == code).first() is not None


def create_squad(db: Session, owner: User, name: str, rng: Optional[random.Random] = None) -> Squad:
    """Creates the squad with a free invite code; the creator joins it"""
    name = (name or "").strip()
    if not name:
        raise ValueError("Squad name is required")

    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        code = generate_invite_code(rng)
        if not _code_taken(db, code):
            break
        logger.info(f"Invite code collision on attempt {attempt}, retrying")
    else:
        raise RuntimeError("Could not generate a unique invite code")

    squad = Squad(name=name, invite_code=code, created_by=owner.id)
    squad.members.append(SquadMember(user_id=owner.id))
    db.add(squad)
    db.commit()
    db.refresh(squad)
    logger.info(f"👥 Squad '{name}' created by {owner.name} ({code})")
    return squad


def get_squad(db: Session, squad_id: int) -> Squad:
    squad = db.query(Squad).filter(Squad.id == squad_id).first()
    if squad is None:
        raise SquadNotFound()
    return squad


def join_squad(db: Session, user: User, code: str) -> Squad:
    """Joins by invite code. Joining twice is a no-op."""
    code = (code or "").strip().upper()
    squad = db.query(Squad).filter(Squad.invite_code == code).first()
    if squad is None:
        raise SquadNotFound("Invalid invite code")

    already = db.query(SquadMember).filter(
        SquadMember.squad_id == squad.id,
        SquadMember.user_id == user.id,
    ).first()
    if not already:
        db.add(SquadMember(squad_id=squad.id, user_id=user.id))
        db.commit()
        db.refresh(squad)
    return squad


def leave_squad(db: Session, user: User, squad_id: int):
    squad = get_squad(db, squad_id)
    membership = db.query(SquadMember).filter(
        SquadMember.squad_id == squad.id,
        SquadMember.user_id == user.id,
    ).first()
    if membership is None:
        raise SquadNotFound("Not a member of this squad")
    db.delete(membership)
    db.commit()


def is_member(db: Session, user: User, squad_id: int) -> bool:
    return db.query(SquadMember.id).filter(
        SquadMember.squad_id == squad_id,
        SquadMember.user_id == user.id,
    ).first() is not None


def squad_leaderboard(db: Session, squad_id: int) -> list[User]:
    return (
        db.query(User)
        .join(SquadMember, SquadMember.user_id == User.id)
        .filter(SquadMember.squad_id == squad_id)
        .order_by(User.xp.desc(), User.streak.desc(), User.id.asc())
        .all()
    )
