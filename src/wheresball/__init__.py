"""Where's The Ball package exposing the game rules, room handling and the web application."""

from .api import app
from .game import RoundTimer, is_hit, score_for
from .rooms import RoomManager
from .rounds import RoundCoordinator
from .session import Backend, PlayerSession

__all__ = [
    "Backend",
    "PlayerSession",
    "RoomManager",
    "RoundCoordinator",
    "RoundTimer",
    "app",
    "is_hit",
    "score_for",
]
