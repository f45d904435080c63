"""API routes for players, stats and playing duels on behalf of bot accounts."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import selectinload

from hub.models import Duel, Player
from hub.models.base import async_session_factory
from hub.services import duels as duel_service
from hub.services import scores as score_service
from hub.services.identity import AuthUser
from hub.services.notifications import notify_duel_challenge
from web.auth import require_admin_session

router = APIRouter(prefix="/api", tags=["players"])


# --- Pydantic schemas ---


class PlayerResponse(BaseModel):
    id: str
    username: Optional[str]
    device_id: Optional[str]
    photo_url: Optional[str] = None
    is_bot: bool
    created_at: Optional[datetime] = None
    games_played: int = 0
    high_score: int = 0


class SummaryResponse(BaseModel):
    total_players: int
    real_players: int
    bot_players: int
    total_games: int
    best_score: int


class HighScoreUpdate(BaseModel):
    high_score: int


class DuelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    challenger_id: str
    challenged_id: str
    seed: int
    status: str
    challenger_score: Optional[int]
    challenged_score: Optional[int]
    winner_id: Optional[str]
    created_at: Optional[datetime] = None


class BoardDuelResponse(DuelResponse):
    """Duel seen from one side: who the opponent is and what each side scored."""

    opponent_id: str
    opponent_name: Optional[str] = None
    my_score: Optional[int] = None
    opponent_score: Optional[int] = None


class DuelBoardResponse(BaseModel):
    player: PlayerResponse
    awaiting_response: List[BoardDuelResponse]
    awaiting_action: List[BoardDuelResponse]
    opponents: List[PlayerResponse]


class ChallengeCreate(BaseModel):
    opponent_id: str


class ScoreSubmit(BaseModel):
    score: int


def _player_response(p: Player) -> PlayerResponse:
    stats = p.stats
    return PlayerResponse(
        id=p.id,
        username=p.username,
        device_id=p.device_id,
        photo_url=p.photo_url,
        is_bot=p.is_bot,
        created_at=p.created_at,
        games_played=(stats.games_played or 0) if stats else 0,
        high_score=(stats.high_score or 0) if stats else 0,
    )


def _board_duel(duel: Duel, player_id: str, players: dict) -> BoardDuelResponse:
    opponent_id = duel.opponent_of(player_id)
    opponent = players.get(opponent_id)
    return BoardDuelResponse(
        **DuelResponse.model_validate(duel).model_dump(),
        opponent_id=opponent_id,
        opponent_name=opponent.username if opponent else None,
        my_score=duel.score_of(player_id),
        opponent_score=duel.score_of(opponent_id),
    )


async def _require_bot(session, player_id: str) -> Player:
    player = await session.get(Player, player_id)
    if not player:
        raise HTTPException(404, "Player not found")
    if not player.is_bot:
        raise HTTPException(403, "Only bot players can be played from the admin hub")
    return player


# --- Players and stats ---


@router.get("/players", response_model=List[PlayerResponse])
async def list_players(
    kind: str = Query("all"),
    admin: AuthUser = Depends(require_admin_session),
):
    """Players with stats, best high score first. kind: all, real or bot."""
    async with async_session_factory() as session:
        players = await score_service.list_players(session, kind)
        return [_player_response(p) for p in players]


@router.get("/players/summary", response_model=SummaryResponse)
async def players_summary(admin: AuthUser = Depends(require_admin_session)):
    async with async_session_factory() as session:
        summary = await score_service.summarize(session)
        return SummaryResponse(**summary.__dict__)


@router.patch("/players/{player_id}/high-score", response_model=PlayerResponse)
async def override_high_score(
    player_id: str,
    body: HighScoreUpdate,
    admin: AuthUser = Depends(require_admin_session),
):
    """Overwrite a player's high score (may lower it)."""
    async with async_session_factory() as session:
        await score_service.override_high_score(session, player_id, body.high_score)
        player = await session.get(
            Player, player_id, options=[selectinload(Player.stats)], populate_existing=True
        )
        return _player_response(player)


# --- Play as bot ---


@router.get("/bots/{player_id}/duels", response_model=DuelBoardResponse)
async def bot_duel_board(player_id: str, admin: AuthUser = Depends(require_admin_session)):
    """Challenges the bot has to answer, duels it can play now, and who it can challenge."""
    async with async_session_factory() as session:
        await _require_bot(session, player_id)
        board = await duel_service.duel_board(session, player_id)
        return DuelBoardResponse(
            player=_player_response(board.player),
            awaiting_response=[_board_duel(d, player_id, board.players) for d in board.awaiting_response],
            awaiting_action=[_board_duel(d, player_id, board.players) for d in board.awaiting_action],
            opponents=[_player_response(p) for p in board.opponents],
        )


@router.post("/bots/{player_id}/duels", response_model=DuelResponse)
async def bot_challenge(
    player_id: str,
    body: ChallengeCreate,
    admin: AuthUser = Depends(require_admin_session),
):
    """Challenge another player in the bot's name. The opponent is notified when push is configured."""
    async with async_session_factory() as session:
        await _require_bot(session, player_id)
        duel = await duel_service.create_challenge(session, player_id, body.opponent_id)
        await notify_duel_challenge(session, duel)
        return DuelResponse.model_validate(duel)


@router.post("/bots/{player_id}/duels/{duel_id}/accept", response_model=DuelResponse)
async def bot_accept(player_id: str, duel_id: str, admin: AuthUser = Depends(require_admin_session)):
    async with async_session_factory() as session:
        await _require_bot(session, player_id)
        duel = await duel_service.accept_challenge(session, duel_id, acting_player_id=player_id)
        return DuelResponse.model_validate(duel)


@router.post("/bots/{player_id}/duels/{duel_id}/decline", response_model=DuelResponse)
async def bot_decline(player_id: str, duel_id: str, admin: AuthUser = Depends(require_admin_session)):
    async with async_session_factory() as session:
        await _require_bot(session, player_id)
        duel = await duel_service.decline_challenge(session, duel_id, acting_player_id=player_id)
        return DuelResponse.model_validate(duel)


@router.post("/bots/{player_id}/duels/{duel_id}/score", response_model=DuelResponse)
async def bot_submit_score(
    player_id: str,
    duel_id: str,
    body: ScoreSubmit,
    admin: AuthUser = Depends(require_admin_session),
):
    """Submit the bot's score. The duel completes once both sides have played."""
    async with async_session_factory() as session:
        await _require_bot(session, player_id)
        duel = await duel_service.submit_score(session, duel_id, player_id, body.score)
        return DuelResponse.model_validate(duel)


@router.get("/duels/{duel_id}", response_model=DuelResponse)
async def get_duel(duel_id: str, admin: AuthUser = Depends(require_admin_session)):
    async with async_session_factory() as session:
        duel = await duel_service.get_duel(session, duel_id)
        return DuelResponse.model_validate(duel)
