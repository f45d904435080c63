"""Duel lifecycle: challenge, accept/decline, score submission, winner resolution.

State machine::

    pending --accept--> active --both scores--> completed
    pending --decline--> declined
    pending --both scores--> completed

Scores arrive independently, from either side, in any order. Each write is
a conditional single-row UPDATE, and completion is a second conditional
UPDATE that only looks at the stored row, so A-then-B, B-then-A and two
concurrent submissions all end in the same record.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import case, null, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from hub.errors import AlreadySubmitted, InvalidTransition, NotFound, ValidationError
from hub.models import Duel, Player
from hub.models.duel import ACTIVE, COMPLETED, DECLINED, OPEN_STATUSES, PENDING
from hub.services.scores import reconcile_high_score, validate_score

logger = logging.getLogger("hub.duels")

# Exclusive upper bound shared with the game's deterministic content generator
SEED_MAX = 2_147_483_647


@dataclass
class DuelBoard:
    """What one player sees: challenges to answer, duels to play, who to challenge."""

    player: Player
    awaiting_response: List[Duel] = field(default_factory=list)
    awaiting_action: List[Duel] = field(default_factory=list)
    opponents: List[Player] = field(default_factory=list)
    players: Dict[str, Player] = field(default_factory=dict)


async def get_duel(session: AsyncSession, duel_id: str) -> Duel:
    """Load a duel fresh from the database. Raises NotFound if missing."""
    duel = await session.get(Duel, duel_id, populate_existing=True)
    if not duel:
        raise NotFound("Duel not found")
    return duel


async def create_challenge(session: AsyncSession, challenger_id: str, challenged_id: str) -> Duel:
    """Insert a pending duel between two existing players with a fresh seed."""
    if not challenger_id or not challenged_id:
        raise ValidationError("Both players are required")
    if challenger_id == challenged_id:
        raise ValidationError("A player cannot challenge themselves")
    result = await session.execute(select(Player.id).where(Player.id.in_([challenger_id, challenged_id])))
    found = set(result.scalars().all())
    for player_id in (challenger_id, challenged_id):
        if player_id not in found:
            raise NotFound(f"Player {player_id} not found")

    duel = Duel(
        challenger_id=challenger_id,
        challenged_id=challenged_id,
        seed=random.randrange(SEED_MAX),
        status=PENDING,
    )
    session.add(duel)
    await session.commit()
    await session.refresh(duel)
    logger.info("Duel %s created: %s challenges %s", duel.id, challenger_id, challenged_id)
    return duel


async def _respond(
    session: AsyncSession, duel_id: str, new_status: str, acting_player_id: Optional[str]
) -> Duel:
    duel = await get_duel(session, duel_id)
    if acting_player_id is not None and acting_player_id != duel.challenged_id:
        raise InvalidTransition("Only the challenged player can answer this challenge")
    result = await session.execute(
        update(Duel)
        .where(Duel.id == duel_id, Duel.status == PENDING)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        duel = await get_duel(session, duel_id)
        logger.warning("Rejected %s -> %s for duel %s", duel.status, new_status, duel_id)
        raise InvalidTransition(f"Duel is {duel.status}, only pending duels can be answered")
    await session.commit()
    duel = await get_duel(session, duel_id)
    logger.info("Duel %s is now %s", duel_id, new_status)
    return duel


async def accept_challenge(session: AsyncSession, duel_id: str, acting_player_id: Optional[str] = None) -> Duel:
    """pending -> active."""
    return await _respond(session, duel_id, ACTIVE, acting_player_id)


async def decline_challenge(session: AsyncSession, duel_id: str, acting_player_id: Optional[str] = None) -> Duel:
    """pending -> declined. Declined duels accept no further changes."""
    return await _respond(session, duel_id, DECLINED, acting_player_id)


async def submit_score(session: AsyncSession, duel_id: str, acting_player_id: str, score: int) -> Duel:
    """Record one party's score; complete the duel once both scores are in.

    Each party submits at most once. The first submission leaves the status
    alone (pending or active). The second completes the duel: the higher
    score wins, a tie leaves winner_id null. The acting player's stats are
    reconciled in the same transaction.
    """
    validate_score(score)
    duel = await get_duel(session, duel_id)
    if not duel.is_party(acting_player_id):
        raise ValidationError("Player is not part of this duel")
    if duel.score_of(acting_player_id) is not None:
        raise AlreadySubmitted("Score already submitted for this duel")
    if duel.status not in OPEN_STATUSES:
        raise InvalidTransition(f"Duel is {duel.status}, scores can no longer be submitted")

    own_field = "challenger_score" if acting_player_id == duel.challenger_id else "challenged_score"
    own_column = getattr(Duel, own_field)
    result = await session.execute(
        update(Duel)
        .where(Duel.id == duel_id, Duel.status.in_(OPEN_STATUSES), own_column.is_(None))
        .values({own_field: score})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Lost a race against another writer
        await session.rollback()
        duel = await get_duel(session, duel_id)
        if duel.score_of(acting_player_id) is not None:
            raise AlreadySubmitted("Score already submitted for this duel")
        raise InvalidTransition(f"Duel is {duel.status}, scores can no longer be submitted")

    await session.execute(
        update(Duel)
        .where(
            Duel.id == duel_id,
            Duel.status.in_(OPEN_STATUSES),
            Duel.challenger_score.is_not(None),
            Duel.challenged_score.is_not(None),
        )
        .values(
            status=COMPLETED,
            winner_id=case(
                (Duel.challenger_score > Duel.challenged_score, Duel.challenger_id),
                (Duel.challenged_score > Duel.challenger_score, Duel.challenged_id),
                else_=null(),
            ),
        )
        .execution_options(synchronize_session=False)
    )
    await reconcile_high_score(session, acting_player_id, score)
    await session.commit()

    duel = await get_duel(session, duel_id)
    if duel.status == COMPLETED:
        logger.info(
            "Duel %s completed %s-%s, winner %s",
            duel_id, duel.challenger_score, duel.challenged_score, duel.winner_id or "none (tie)",
        )
    else:
        logger.info("Duel %s: %s submitted %d, waiting for opponent", duel_id, acting_player_id, score)
    return duel


def awaiting_my_action(duel: Duel, player_id: str) -> bool:
    """True when the player can play this duel now.

    The challenger may play as soon as the challenge exists; the challenged
    player has to accept first.
    """
    if not duel.is_party(player_id) or duel.score_of(player_id) is not None:
        return False
    if duel.status == ACTIVE:
        return True
    return duel.status == PENDING and duel.challenger_id == player_id


def awaiting_my_response(duel: Duel, player_id: str) -> bool:
    """True when the player was challenged and has not accepted or declined yet."""
    return duel.status == PENDING and duel.challenged_id == player_id


async def list_open_duels(session: AsyncSession, player_id: str) -> List[Duel]:
    """Pending and active duels involving the player, newest first."""
    result = await session.execute(
        select(Duel)
        .where(
            or_(Duel.challenger_id == player_id, Duel.challenged_id == player_id),
            Duel.status.in_(OPEN_STATUSES),
        )
        .order_by(Duel.created_at.desc())
    )
    return list(result.scalars().all())


async def duel_board(session: AsyncSession, player_id: str) -> DuelBoard:
    player = await session.get(Player, player_id)
    if not player:
        raise NotFound("Player not found")
    board = DuelBoard(player=player)
    result = await session.execute(
        select(Player)
        .options(selectinload(Player.stats))
        .order_by(Player.username)
        .execution_options(populate_existing=True)
    )
    for p in result.scalars().all():
        board.players[p.id] = p
        if p.id != player_id:
            board.opponents.append(p)
    for duel in await list_open_duels(session, player_id):
        if awaiting_my_response(duel, player_id):
            board.awaiting_response.append(duel)
        elif awaiting_my_action(duel, player_id):
            board.awaiting_action.append(duel)
    return board
