"""Player stats: per-game high score reconciliation, admin override, dashboard summary."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import config
from hub.errors import NotFound, ValidationError
from hub.models import Player, PlayerStats

logger = logging.getLogger("hub.scores")

PLAYER_KINDS = ("all", "real", "bot")


@dataclass
class StatsSummary:
    total_players: int
    real_players: int
    bot_players: int
    total_games: int
    best_score: int


def _is_bot_clause():
    return Player.device_id.startswith(config.BOT_DEVICE_PREFIX, autoescape=True)


def validate_score(score: int) -> None:
    if isinstance(score, bool) or not isinstance(score, int) or score < 0:
        raise ValidationError("Score must be a non-negative integer")


async def _load_stats(session: AsyncSession, player_id: str) -> PlayerStats | None:
    result = await session.execute(
        select(PlayerStats)
        .where(PlayerStats.player_id == player_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def reconcile_high_score(session: AsyncSession, player_id: str, candidate_score: int) -> PlayerStats:
    """Count one game for the player and raise high_score if candidate_score beats it.

    Every call increments games_played exactly once, whatever the score. The
    update is a single statement so two concurrent calls cannot lose a game.
    Creates the stats row when the player has none. Flushes but does not
    commit; the caller owns the transaction.
    """
    validate_score(candidate_score)
    result = await session.execute(
        update(PlayerStats)
        .where(PlayerStats.player_id == player_id)
        .values(
            games_played=func.coalesce(PlayerStats.games_played, 0) + 1,
            high_score=case(
                (func.coalesce(PlayerStats.high_score, 0) < candidate_score, candidate_score),
                else_=func.coalesce(PlayerStats.high_score, 0),
            ),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if await session.get(Player, player_id) is None:
            raise NotFound("Player not found")
        session.add(PlayerStats(player_id=player_id, games_played=1, high_score=candidate_score))
        await session.flush()
        logger.info("Created stats for player %s with score %d", player_id, candidate_score)
    stats = await _load_stats(session, player_id)
    logger.debug(
        "Reconciled player %s: candidate=%d high_score=%s games=%d",
        player_id, candidate_score, stats.high_score, stats.games_played,
    )
    return stats


async def override_high_score(session: AsyncSession, player_id: str, score: int) -> PlayerStats:
    """Admin overwrite of high_score. May lower it; games_played is untouched."""
    validate_score(score)
    player = await session.get(Player, player_id)
    if not player:
        raise NotFound("Player not found")
    stats = await _load_stats(session, player_id)
    if stats is None:
        stats = PlayerStats(player_id=player_id, games_played=0, high_score=score)
        session.add(stats)
    else:
        stats.high_score = score
    await session.commit()
    await session.refresh(stats)
    logger.info("High score of player %s overridden to %d", player_id, score)
    return stats


async def list_players(session: AsyncSession, kind: str = "all") -> List[Player]:
    """Players with stats loaded, best high score first. kind: all, real or bot."""
    if kind not in PLAYER_KINDS:
        raise ValidationError(f"kind must be one of: {', '.join(PLAYER_KINDS)}")
    query = (
        select(Player)
        .outerjoin(PlayerStats, PlayerStats.player_id == Player.id)
        .options(selectinload(Player.stats))
        .order_by(func.coalesce(PlayerStats.high_score, 0).desc(), Player.created_at.desc())
    )
    if kind == "bot":
        query = query.where(_is_bot_clause())
    elif kind == "real":
        query = query.where(or_(Player.device_id.is_(None), ~_is_bot_clause()))
    result = await session.execute(query)
    return list(result.scalars().all())


async def summarize(session: AsyncSession) -> StatsSummary:
    """Dashboard counters: players by kind, games played, best score ever."""
    total = await session.scalar(select(func.count(Player.id)))
    bots = await session.scalar(select(func.count(Player.id)).where(_is_bot_clause()))
    games, best = (
        await session.execute(
            select(
                func.coalesce(func.sum(PlayerStats.games_played), 0),
                func.coalesce(func.max(PlayerStats.high_score), 0),
            )
        )
    ).one()
    return StatsSummary(
        total_players=total or 0,
        real_players=(total or 0) - (bots or 0),
        bot_players=bots or 0,
        total_games=int(games),
        best_score=int(best),
    )
