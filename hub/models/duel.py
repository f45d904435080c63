"""Duel model."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from hub.models.base import Base

PENDING = "pending"
ACTIVE = "active"
COMPLETED = "completed"
DECLINED = "declined"

# Statuses in which scores may still be submitted
OPEN_STATUSES = (PENDING, ACTIVE)


class Duel(Base):
    """Challenge between two players. Both sides play the same seed."""

    __tablename__ = "duels"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    challenger_id: Mapped[str] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False, index=True)
    challenged_id: Mapped[str] = mapped_column(ForeignKey("players.id", ondelete="CASCADE"), nullable=False, index=True)
    seed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PENDING)  # pending, active, completed, declined
    challenger_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    challenged_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    winner_id: Mapped[Optional[str]] = mapped_column(ForeignKey("players.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )

    def is_party(self, player_id: str) -> bool:
        return player_id in (self.challenger_id, self.challenged_id)

    def score_of(self, player_id: str) -> Optional[int]:
        return self.challenger_score if player_id == self.challenger_id else self.challenged_score

    def opponent_of(self, player_id: str) -> str:
        return self.challenged_id if player_id == self.challenger_id else self.challenger_id
