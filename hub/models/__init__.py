"""Database models."""
from hub.models.base import Base, init_db
from hub.models.player import Player, PlayerStats
from hub.models.duel import Duel
from hub.models.identity import AdminUser, MfaChallenge, MfaFactor  # noqa: F401 - for metadata

__all__ = [
    "Base",
    "Player",
    "PlayerStats",
    "Duel",
    "AdminUser",
    "MfaFactor",
    "MfaChallenge",
    "init_db",
]
