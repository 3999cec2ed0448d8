"""One player's game: room membership, rounds, realtime updates and audio."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Coroutine, Dict, List, Optional, Set

from .audio import AudioSession
from .config import Settings
from .errors import WheresBallError
from .fallback import LocalImageStore
from .images import SavedImageLibrary
from .realtime import Reconciler
from .rooms import RoomManager, RoomSnapshot
from .rounds import RoundCoordinator
from .services import BallLocator, ImageGenerator, SpeechSynthesizer
from .store import MemoryRoomStore

logger = logging.getLogger(__name__)

LOG_LIMIT = 5
DEFAULT_PLAYER_NAME = "Player"


@dataclass
class Backend:
    """Shared collaborators handed to every player session."""

    settings: Settings
    store: MemoryRoomStore
    rooms: RoomManager
    library: SavedImageLibrary
    generator: ImageGenerator
    locator: BallLocator
    speech: Optional[SpeechSynthesizer] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Backend":
        store = MemoryRoomStore()
        speech = None
        if settings.elevenlabs_api_key:
            speech = SpeechSynthesizer(settings.elevenlabs_api_key)
        return cls(
            settings=settings,
            store=store,
            rooms=RoomManager(store),
            library=SavedImageLibrary(store, LocalImageStore(settings.local_store_path)),
            generator=ImageGenerator(settings.fal_key),
            locator=BallLocator(settings.gemini_api_key),
            speech=speech,
        )


class PlayerSession:
    """Everything one player sees, from the lobby to the final leaderboard."""

    def __init__(self, backend: Backend, player_name: str, pin: Optional[str] = None) -> None:
        self.id = uuid.uuid4().hex
        self.backend = backend
        self.settings = backend.settings
        self.player_name = player_name
        self.pin = pin
        self.multiplayer = pin is not None
        self.is_host = not self.multiplayer
        self.host_player_name: Optional[str] = None if self.multiplayer else player_name
        self.game_started = False
        self.countdown: Optional[int] = None
        self.closed = False

        self.players: List[Dict[str, Any]] = []
        self.roster: List[Dict[str, Any]] = []
        self.status_text = ""
        self.recent_scorer: Optional[str] = None
        self.show_notification = False
        self.logs: List[str] = []

        self.audio = AudioSession(backend.speech, emit=self.publish)
        self.coordinator = RoundCoordinator(self)
        self.reconciler = Reconciler(self)

        self._tasks: Set[asyncio.Task] = set()
        self._listeners: Set[asyncio.Queue] = set()
        self._countdown_task: Optional[asyncio.Task] = None
        self._status_handle: Optional[asyncio.TimerHandle] = None
        self._notification_handle: Optional[asyncio.TimerHandle] = None

    # ---- collaborators ----

    @property
    def store(self) -> MemoryRoomStore:
        return self.backend.store

    @property
    def rooms(self) -> RoomManager:
        return self.backend.rooms

    @property
    def library(self) -> SavedImageLibrary:
        return self.backend.library

    @property
    def generator(self) -> ImageGenerator:
        return self.backend.generator

    @property
    def locator(self) -> BallLocator:
        return self.backend.locator

    # ---- construction ----

    @classmethod
    async def host_room(cls, backend: Backend, player_name: str, rounds: int) -> "PlayerSession":
        pin = await backend.rooms.create_room(player_name, rounds)
        session = cls(backend, player_name, pin=pin)
        await session.open()
        return session

    @classmethod
    async def join_room(cls, backend: Backend, pin: str, player_name: str) -> "PlayerSession":
        await backend.rooms.join_room(pin, player_name)
        session = cls(backend, player_name, pin=pin)
        await session.open()
        return session

    @classmethod
    async def solo(cls, backend: Backend, player_name: str = DEFAULT_PLAYER_NAME) -> "PlayerSession":
        session = cls(backend, player_name)
        await session.open()
        return session

    async def open(self) -> None:
        await self.audio.start()
        self.spawn(self.audio.preload_common_announcements())
        await self.library.load()
        if self.multiplayer:
            self.reconciler.start()
            await self.refresh()
        else:
            self.players = [{"name": self.player_name, "score": 0, "lastRoundTime": None}]

    # ---- events ----

    def listen(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.add(queue)
        return queue

    def unlisten(self, queue: asyncio.Queue) -> None:
        self._listeners.discard(queue)

    def publish(self, event: Dict[str, Any]) -> None:
        for queue in list(self._listeners):
            queue.put_nowait(event)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task for %s failed", self.player_name, exc_info=exc)

    # ---- status bar, notifications and error log ----

    def show_status(self, text: str, duration: float = 3.0) -> None:
        """Show ``text`` in the status bar; ``duration`` <= 0 keeps it until replaced."""

        if self._status_handle is not None:
            self._status_handle.cancel()
            self._status_handle = None
        self.status_text = text
        self.publish({"type": "status", "text": text})
        if duration > 0:
            loop = asyncio.get_running_loop()
            self._status_handle = loop.call_later(duration, self._clear_status, text)

    def _clear_status(self, text: str) -> None:
        self._status_handle = None
        if self.status_text == text:
            self.status_text = ""
            self.publish({"type": "status", "text": ""})

    def notify_scorer(self, player_name: str) -> None:
        if self._notification_handle is not None:
            self._notification_handle.cancel()
        self.recent_scorer = player_name
        self.show_notification = True
        self.publish({"type": "notification", "playerName": player_name, "visible": True})
        loop = asyncio.get_running_loop()
        self._notification_handle = loop.call_later(
            self.settings.notification_seconds, self._hide_notification
        )

    def _hide_notification(self) -> None:
        self._notification_handle = None
        self.show_notification = False
        self.publish({"type": "notification", "playerName": self.recent_scorer, "visible": False})

    def log_error(self, message: str, exc: Optional[BaseException] = None) -> None:
        logger.error("%s: %s", message, exc)
        stamp = datetime.now().strftime("%H:%M:%S")
        self.logs = [f"{stamp}: {message} - {exc or 'Unknown error'}"] + self.logs[: LOG_LIMIT - 1]

    # ---- room state ----

    def is_member(self) -> bool:
        return any(entry["name"] == self.player_name for entry in self.roster)

    def set_host(self, host_player_name: str) -> None:
        was_host = self.is_host
        previous = self.host_player_name
        self.host_player_name = host_player_name
        self.is_host = host_player_name == self.player_name
        if self.is_host and not was_host and previous is not None:
            logger.info("%s is now host of room %s", self.player_name, self.pin)
            self.show_status("You are now the host", 3.0)
        self.publish({"type": "host", "hostPlayerName": host_player_name, "isHost": self.is_host})

    async def refresh(self) -> Optional[RoomSnapshot]:
        """Reload room and players; the round number is left to the reconciler."""

        try:
            snapshot = await self.rooms.load(self.pin)
        except WheresBallError as exc:
            self.log_error("Error fetching room data", exc)
            return None

        room = snapshot.room
        if room.host_player_name != self.host_player_name:
            self.set_host(room.host_player_name)
        self.coordinator.total_rounds = room.total_rounds
        if room.game_completed and not self.coordinator.game_completed:
            self.coordinator.mark_completed()

        self.players = [
            {"name": p.player_name, "score": p.score, "lastRoundTime": p.last_round_time}
            for p in snapshot.players
        ]
        self.roster = [
            {"name": p.player_name, "joinedAt": p.joined_at.isoformat()}
            for p in sorted(snapshot.players, key=lambda p: p.joined_at)
        ]
        self.publish({"type": "players", "players": list(self.players)})
        return snapshot

    def credit_local(self, points: int) -> None:
        for entry in self.players:
            if entry["name"] == self.player_name:
                entry["score"] += points
                break
        else:
            self.players.append({"name": self.player_name, "score": points, "lastRoundTime": None})
        self.players.sort(key=lambda entry: -entry["score"])
        self.publish({"type": "players", "players": list(self.players)})

    # ---- game flow ----

    async def set_total_rounds(self, rounds: int) -> None:
        if self.multiplayer:
            await self.rooms.set_total_rounds(self.pin, self.player_name, rounds)
        self.coordinator.total_rounds = rounds

    async def start_game(self) -> None:
        if self.multiplayer:
            await self.rooms.start_game(self.pin, self.player_name)
        self.game_started = True
        self.coordinator.current_round = 1
        self.start_countdown()

    def start_countdown(self) -> Optional[asyncio.Task]:
        if self._countdown_task is not None and not self._countdown_task.done():
            return None
        self._countdown_task = self.spawn(self._run_countdown())
        return self._countdown_task

    async def _run_countdown(self) -> None:
        step = self.settings.countdown_step
        for number in range(self.settings.countdown_from, 0, -1):
            self.countdown = number
            self.publish({"type": "countdown", "value": number})
            self.spawn(self.audio.announce_countdown(number))
            await asyncio.sleep(step)
        self.countdown = None
        self.publish({"type": "countdown", "value": None})
        self.spawn(self.audio.announce_countdown(0))

        coordinator = self.coordinator
        if coordinator.image_url is None and not coordinator.loading and not coordinator.has_api_error:
            await coordinator.start_new_round()

    async def next_round(self) -> None:
        await self.coordinator.start_new_round(increment=True)

    def set_options(
        self,
        use_new_image: Optional[bool] = None,
        muted: Optional[bool] = None,
        volume: Optional[float] = None,
    ) -> None:
        if use_new_image is not None:
            self.coordinator.use_new_image = use_new_image
        if muted is not None:
            self.audio.muted = muted
        if volume is not None:
            self.audio.volume = volume

    # ---- teardown ----

    async def leave(self) -> None:
        if self.multiplayer and not self.closed:
            try:
                new_host = await self.rooms.leave_room(self.pin, self.player_name)
            except WheresBallError as exc:
                self.log_error("Error leaving room", exc)
            else:
                if new_host:
                    logger.info("%s left room %s, %s is host", self.player_name, self.pin, new_host)
        await self.close()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.reconciler.stop()
        self.coordinator.close()
        for handle in (self._status_handle, self._notification_handle):
            if handle is not None:
                handle.cancel()
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.audio.close()
        self.publish({"type": "closed"})

    # ---- serialization ----

    def serialize(self) -> Dict[str, Any]:
        coordinator = self.coordinator
        answer = None
        if coordinator.round_completed and coordinator.answer_position is not None:
            answer = coordinator.answer_position.to_dict()
        return {
            "id": self.id,
            "playerName": self.player_name,
            "pin": self.pin,
            "isMultiplayer": self.multiplayer,
            "isHost": self.is_host,
            "hostPlayerName": self.host_player_name,
            "gameStarted": self.game_started,
            "countdown": self.countdown,
            "round": {
                "current": coordinator.current_round,
                "total": coordinator.total_rounds,
                "state": coordinator.state.value,
                "timeRemaining": coordinator.time_remaining,
                "active": coordinator.round_active,
                "completed": coordinator.round_completed,
                "lastScore": coordinator.last_score,
                "imageUrl": coordinator.image_url,
                "answerPosition": answer,
                "loading": coordinator.loading,
                "loadingQuote": coordinator.loading_quote,
                "transitioning": coordinator.transitioning,
                "hasApiError": coordinator.has_api_error,
                "backgroundDetecting": coordinator.background_detecting,
                "waitingForLocation": coordinator.waiting_for_location,
                "useNewImage": coordinator.use_new_image,
                "pinpointMode": coordinator.pinpoint_mode,
                "gameCompleted": coordinator.game_completed,
            },
            "status": self.status_text,
            "notification": {
                "playerName": self.recent_scorer,
                "visible": self.show_notification,
            },
            "players": list(self.players),
            "roster": list(self.roster),
            "logs": list(self.logs),
            "audio": {"muted": self.audio.muted, "volume": self.audio.volume},
        }
