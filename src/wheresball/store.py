"""In-memory realtime room store with per-table change notifications."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .errors import StoreError
from .models import BoundingBox, ChangeEvent, Room, RoomPlayer, SavedImage, utcnow

logger = logging.getLogger(__name__)

ROOMS = "rooms"
ROOM_PLAYERS = "room_players"
SAVED_IMAGES = "saved_images"
TABLES = (ROOMS, ROOM_PLAYERS, SAVED_IMAGES)

_ROOM_FIELDS = {f.name for f in fields(Room)} - {"id", "pin_code", "created_at"}
_PLAYER_FIELDS = {"score", "last_round_time", "joined_at"}


class Subscription:
    """Async iterator over the change events of one table."""

    def __init__(self, store: "MemoryRoomStore", table: str, pin: Optional[str]) -> None:
        self.table = table
        self.pin = pin
        self.closed = False
        self._store = store
        self._queue: "asyncio.Queue[Optional[ChangeEvent]]" = asyncio.Queue()

    def matches(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        return self.pin is None or event.pin == self.pin

    def push(self, event: Optional[ChangeEvent]) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._subscriptions.discard(self)
        self._queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class MemoryRoomStore:
    """Rooms, room players and saved images held in process memory."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self.rooms: Dict[int, Room] = {}
        self.players: Dict[tuple[int, str], RoomPlayer] = {}
        self.saved_images: Dict[str, SavedImage] = {}
        self._subscriptions: Set[Subscription] = set()

    # ---- change notifications ----

    def subscribe(self, table: str, pin: Optional[str] = None) -> Subscription:
        if table not in TABLES:
            raise StoreError(f"Unknown table {table!r}")
        subscription = Subscription(self, table, pin)
        self._subscriptions.add(subscription)
        return subscription

    def _publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.push(event)

    def _pin_for(self, room_id: int) -> Optional[str]:
        room = self.rooms.get(room_id)
        return room.pin_code if room else None

    def _find_room(self, pin: str, active_only: bool = False) -> Optional[Room]:
        candidates = [
            room
            for room in self.rooms.values()
            if room.pin_code == pin and (room.is_active or not active_only)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda room: room.id)

    # ---- rooms ----

    async def create_room(self, pin: str, host: str, rounds: int) -> Room:
        async with self._lock:
            room = Room(
                id=next(self._ids),
                pin_code=pin,
                host_player_name=host,
                total_rounds=rounds,
            )
            self.rooms[room.id] = room
            self._publish(ChangeEvent(ROOMS, "INSERT", new=room.row(), pin=pin))
            return replace(room)

    async def get_room(self, pin: str, active_only: bool = False) -> Optional[Room]:
        async with self._lock:
            room = self._find_room(pin, active_only)
            return replace(room) if room else None

    async def pin_in_use(self, pin: str) -> bool:
        async with self._lock:
            return self._find_room(pin, active_only=True) is not None

    async def update_room(self, pin: str, **changes: Any) -> Room:
        unknown = set(changes) - _ROOM_FIELDS
        if unknown:
            raise StoreError(f"Unknown room fields: {', '.join(sorted(unknown))}")
        position = changes.get("current_answer_position")
        if position is not None and not isinstance(position, BoundingBox):
            changes["current_answer_position"] = BoundingBox.from_mapping(position)
        async with self._lock:
            room = self._find_room(pin)
            if room is None:
                raise StoreError(f"No room with pin {pin}")
            old = room.row()
            for name, value in changes.items():
                setattr(room, name, value)
            self._publish(ChangeEvent(ROOMS, "UPDATE", new=room.row(), old=old, pin=pin))
            return replace(room)

    # ---- room players ----

    async def insert_player(self, room_id: int, name: str, score: int = 0) -> RoomPlayer:
        async with self._lock:
            if room_id not in self.rooms:
                raise StoreError(f"No room with id {room_id}")
            if (room_id, name) in self.players:
                raise StoreError(f"Player {name!r} already in room {room_id}")
            player = RoomPlayer(id=next(self._ids), room_id=room_id, player_name=name, score=score)
            self.players[(room_id, name)] = player
            self._publish(
                ChangeEvent(ROOM_PLAYERS, "INSERT", new=player.row(), pin=self._pin_for(room_id))
            )
            return replace(player)

    async def upsert_player(
        self,
        room_id: int,
        name: str,
        score: int = 0,
        joined_at: Optional[datetime] = None,
    ) -> RoomPlayer:
        """Insert or update keyed on (room_id, player_name)."""

        async with self._lock:
            if room_id not in self.rooms:
                raise StoreError(f"No room with id {room_id}")
            joined = joined_at or utcnow()
            existing = self.players.get((room_id, name))
            pin = self._pin_for(room_id)
            if existing is None:
                player = RoomPlayer(
                    id=next(self._ids),
                    room_id=room_id,
                    player_name=name,
                    score=score,
                    joined_at=joined,
                )
                self.players[(room_id, name)] = player
                self._publish(ChangeEvent(ROOM_PLAYERS, "INSERT", new=player.row(), pin=pin))
                return replace(player)
            old = existing.row()
            existing.score = score
            existing.joined_at = joined
            self._publish(
                ChangeEvent(ROOM_PLAYERS, "UPDATE", new=existing.row(), old=old, pin=pin)
            )
            return replace(existing)

    async def get_player(self, room_id: int, name: str) -> Optional[RoomPlayer]:
        async with self._lock:
            player = self.players.get((room_id, name))
            return replace(player) if player else None

    async def update_player(self, room_id: int, name: str, **changes: Any) -> RoomPlayer:
        unknown = set(changes) - _PLAYER_FIELDS
        if unknown:
            raise StoreError(f"Unknown player fields: {', '.join(sorted(unknown))}")
        async with self._lock:
            player = self.players.get((room_id, name))
            if player is None:
                raise StoreError(f"Player {name!r} not in room {room_id}")
            old = player.row()
            for field_name, value in changes.items():
                setattr(player, field_name, value)
            self._publish(
                ChangeEvent(
                    ROOM_PLAYERS, "UPDATE", new=player.row(), old=old, pin=self._pin_for(room_id)
                )
            )
            return replace(player)

    async def delete_player(self, room_id: int, name: str) -> bool:
        async with self._lock:
            player = self.players.pop((room_id, name), None)
            if player is None:
                return False
            self._publish(
                ChangeEvent(ROOM_PLAYERS, "DELETE", old=player.row(), pin=self._pin_for(room_id))
            )
            return True

    async def list_players(self, room_id: int, order_by: str = "score") -> List[RoomPlayer]:
        async with self._lock:
            players = [p for (rid, _), p in self.players.items() if rid == room_id]
            if order_by == "score":
                players.sort(key=lambda p: (-p.score, p.id))
            elif order_by == "joined_at":
                players.sort(key=lambda p: (p.joined_at, p.id))
            else:
                raise StoreError(f"Cannot order players by {order_by!r}")
            return [replace(p) for p in players]

    # ---- saved images ----

    async def list_saved_images(self) -> List[SavedImage]:
        async with self._lock:
            # Newest first; insertion order breaks timestamp ties.
            images = sorted(
                reversed(list(self.saved_images.values())),
                key=lambda img: img.created_at,
                reverse=True,
            )
            return [replace(img) for img in images]

    async def insert_saved_image(self, url: str, box: BoundingBox) -> SavedImage:
        async with self._lock:
            image = SavedImage(url=url, answer_position=box)
            self.saved_images[url] = image
            self._publish(ChangeEvent(SAVED_IMAGES, "INSERT", new=image.row()))
            return replace(image)

    async def update_saved_image(self, url: str, box: BoundingBox) -> SavedImage:
        async with self._lock:
            image = self.saved_images.get(url)
            if image is None:
                raise StoreError(f"No saved image {url}")
            old = image.row()
            image.answer_position = box
            self._publish(ChangeEvent(SAVED_IMAGES, "UPDATE", new=image.row(), old=old))
            return replace(image)

    async def delete_saved_image(self, url: str) -> bool:
        async with self._lock:
            image = self.saved_images.pop(url, None)
            if image is None:
                return False
            self._publish(ChangeEvent(SAVED_IMAGES, "DELETE", old=image.row()))
            return True
