# tests/test_squads.py

from __future__ import annotations

import random

import pytest

import squads
from models import Squad


class ScriptedRandom:
    """Returns the characters of `script` in order for choice()"""

    def __init__(self, script: str):
        self.script = list(script)

    def choice(self, seq):
        return self.script.pop(0)


def test_invite_code_shape():
    code = squads.generate_invite_code(random.Random(5))
    assert len(code) == 6
    assert all(c in squads.INVITE_CODE_ALPHABET for c in code)


def test_create_squad_adds_creator(db, make_user):
    owner = make_user()
    squad = squads.create_squad(db, owner, "Early Risers")
    assert squad.created_by == owner.id
    assert [m.user_id for m in squad.members] == [owner.id]
    assert squads.is_member(db, owner, squad.id)


def test_create_squad_retries_on_collision(db, make_user):
    owner = make_user()
    db.add(Squad(name="Taken", invite_code="AAAAAA"))
    db.commit()

    squad = squads.create_squad(db, owner, "New", rng=ScriptedRandom("AAAAAA" + "BBBBBB"))
    assert squad.invite_code == "BBBBBB"


def test_create_squad_gives_up_after_max_attempts(db, make_user, monkeypatch):
    owner = make_user()
    db.add(Squad(name="Taken", invite_code="AAAAAA"))
    db.commit()
    monkeypatch.setattr(squads, "MAX_CODE_ATTEMPTS", 3)

    with pytest.raises(RuntimeError):
        squads.create_squad(db, owner, "New", rng=ScriptedRandom("A" * 18))


def test_join_is_case_insensitive_and_idempotent(db, make_user):
    owner, friend = make_user(), make_user()
    squad = squads.create_squad(db, owner, "Gym Crew", rng=ScriptedRandom("GYM123"))

    squads.join_squad(db, friend, " gym123 ")
    squads.join_squad(db, friend, "GYM123")

    assert len(squad.members) == 2


def test_join_unknown_code(db, make_user):
    with pytest.raises(squads.SquadNotFound):
        squads.join_squad(db, make_user(), "ZZZZZZ")


def test_leave_squad(db, make_user):
    owner, friend = make_user(), make_user()
    squad = squads.create_squad(db, owner, "Crew")
    squads.join_squad(db, friend, squad.invite_code)
    squads.leave_squad(db, friend, squad.id)

    assert not squads.is_member(db, friend, squad.id)
    with pytest.raises(squads.SquadNotFound):
        squads.leave_squad(db, friend, squad.id)


def test_squad_leaderboard(db, make_user):
    owner = make_user(xp=10)
    friend = make_user(xp=300)
    make_user(xp=1000)
    squad = squads.create_squad(db, owner, "Crew")
    squads.join_squad(db, friend, squad.invite_code)

    assert [u.id for u in squads.squad_leaderboard(db, squad.id)] == [friend.id, owner.id]
