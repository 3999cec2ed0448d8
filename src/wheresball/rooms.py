"""Room lifecycle: create, join, leave, host transfer and shared room state."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import GameAlreadyStartedError, NotHostError, RoomNotFoundError, StoreError
from .models import BoundingBox, Room, RoomPlayer, utcnow
from .store import MemoryRoomStore

logger = logging.getLogger(__name__)

PIN_LOW = 100000
PIN_HIGH = 999999
PIN_ATTEMPTS = 10


def generate_pin(rng: Optional[random.Random] = None) -> str:
    return str((rng or random).randint(PIN_LOW, PIN_HIGH))


@dataclass
class RoomSnapshot:
    room: Room
    players: List[RoomPlayer] = field(default_factory=list)

    def is_member(self, name: Optional[str]) -> bool:
        return any(p.player_name == name for p in self.players)


class RoomManager:
    """Room bookkeeping on top of the room store."""

    def __init__(self, store: MemoryRoomStore, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self._rng = rng

    async def _room(self, pin: str) -> Room:
        room = await self.store.get_room(pin)
        if room is None:
            raise RoomNotFoundError(pin)
        return room

    async def create_room(self, player_name: str, rounds: int = 5) -> str:
        for _ in range(PIN_ATTEMPTS):
            pin = generate_pin(self._rng)
            if not await self.store.pin_in_use(pin):
                break
        else:
            raise StoreError("Unable to allocate room pin")

        room = await self.store.create_room(pin, player_name, rounds)
        await self.store.insert_player(room.id, player_name, score=0)
        logger.info("Room %s created by %s (%d rounds)", pin, player_name, rounds)
        return pin

    async def join_room(self, pin: str, player_name: str) -> Room:
        room = await self.store.get_room(pin, active_only=True)
        if room is None:
            raise RoomNotFoundError(pin)
        if room.game_started:
            raise GameAlreadyStartedError(pin)

        # Rejoining resets the score; see DESIGN.md.
        await self.store.upsert_player(room.id, player_name, score=0, joined_at=utcnow())
        logger.info("%s joined room %s", player_name, pin)
        return room

    async def leave_room(self, pin: str, player_name: str) -> Optional[str]:
        """Remove the player and return the new host name, if host changed."""

        room = await self.store.get_room(pin)
        if room is None:
            return None
        removed = await self.store.delete_player(room.id, player_name)
        if not removed:
            logger.warning("%s was not a member of room %s", player_name, pin)
            return None
        if room.host_player_name != player_name:
            return None

        remaining = await self.store.list_players(room.id, order_by="joined_at")
        if remaining:
            new_host = remaining[0].player_name
            await self.store.update_room(pin, host_player_name=new_host)
            logger.info("Host of room %s transferred to %s", pin, new_host)
            return new_host

        await self.store.update_room(pin, is_active=False)
        logger.info("Room %s deactivated, no players remaining", pin)
        return None

    async def load(self, pin: str) -> RoomSnapshot:
        room = await self._room(pin)
        players = await self.store.list_players(room.id, order_by="score")
        return RoomSnapshot(room=room, players=players)

    async def get_room(self, pin: str) -> Room:
        return await self._room(pin)

    async def require_host(self, pin: str, player_name: str, action: str) -> Room:
        room = await self._room(pin)
        if room.host_player_name != player_name:
            raise NotHostError(action)
        return room

    async def set_total_rounds(self, pin: str, player_name: str, rounds: int) -> Room:
        await self.require_host(pin, player_name, "change the number of rounds")
        return await self.store.update_room(pin, total_rounds=rounds)

    async def start_game(self, pin: str, player_name: str) -> Room:
        await self.require_host(pin, player_name, "start the game")
        return await self.store.update_room(pin, game_started=True, current_round=1)

    async def add_score(self, pin: str, player_name: str, points: int, elapsed_ms: int) -> None:
        room = await self._room(pin)
        player = await self.store.get_player(room.id, player_name)
        if player is None:
            logger.warning("Score for %s dropped, not in room %s", player_name, pin)
            return
        await self.store.update_player(
            room.id, player_name, score=player.score + points, last_round_time=elapsed_ms
        )

    async def advance_round(self, pin: str, round_number: int) -> Room:
        return await self.store.update_room(
            pin,
            current_round=round_number,
            current_image_url=None,
            current_answer_position=None,
        )

    async def complete_game(self, pin: str, total_rounds: int) -> Room:
        return await self.store.update_room(
            pin, current_round=total_rounds, game_completed=True
        )

    async def publish_image(self, pin: str, url: str, box: BoundingBox) -> Room:
        return await self.store.update_room(
            pin, current_image_url=url, current_answer_position=box
        )

    async def reset_game(self, pin: str) -> Room:
        return await self.store.update_room(
            pin,
            current_round=1,
            game_completed=False,
            game_started=False,
            current_image_url=None,
            current_answer_position=None,
        )
