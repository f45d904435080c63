"""Player and player stats models."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

import config
from hub.models.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Player(Base):
    """Game account. Bots are synthetic accounts whose device_id carries the bot prefix."""

    __tablename__ = "players"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    photo_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    fcm_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)  # push token, set by the app
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    stats = relationship(
        "PlayerStats", back_populates="player", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def is_bot(self) -> bool:
        return bool(self.device_id) and self.device_id.startswith(config.BOT_DEVICE_PREFIX)


class PlayerStats(Base):
    """Aggregate stats, one row per player. high_score only goes down through an admin override."""

    __tablename__ = "player_stats"

    player_id: Mapped[str] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), primary_key=True)
    games_played: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    high_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=0)
    total_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_lines_cleared: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_play_time_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    best_combo: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    player = relationship("Player", back_populates="stats")
