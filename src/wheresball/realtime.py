"""Applies room store change events to a player's local view."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, Callable, List

from .errors import WheresBallError
from .models import BoundingBox, ChangeEvent
from .store import ROOM_PLAYERS, ROOMS, Subscription

if TYPE_CHECKING:
    from .session import PlayerSession

logger = logging.getLogger(__name__)


class Reconciler:
    """Listens to the player's room and keeps the session in step with it."""

    def __init__(self, session: "PlayerSession") -> None:
        self.session = session
        self._subscriptions: List[Subscription] = []

    @property
    def listening(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> None:
        if self._subscriptions:
            return
        session = self.session
        handlers = (
            (ROOM_PLAYERS, self.on_player_change),
            (ROOMS, self.on_room_change),
        )
        for table, handler in handlers:
            subscription = session.store.subscribe(table, pin=session.pin)
            self._subscriptions.append(subscription)
            session.spawn(self._pump(subscription, handler))
        logger.info("Listening to room %s for %s", session.pin, session.player_name)

    def stop(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.close()

    async def _pump(
        self,
        subscription: Subscription,
        handler: Callable[[ChangeEvent], Awaitable[None]],
    ) -> None:
        async for event in subscription:
            try:
                await handler(event)
            except WheresBallError as exc:
                self.session.log_error(f"Error applying {event.table} change", exc)

    async def on_player_change(self, event: ChangeEvent) -> None:
        session = self.session
        if event.type == "UPDATE" and event.new:
            scorer = event.new.get("player_name")
            new_score = event.new.get("score") or 0
            old_score = (event.old or {}).get("score") or 0
            if new_score > old_score and scorer and scorer != session.player_name:
                session.notify_scorer(scorer)
                if session.game_started:
                    session.spawn(session.audio.announce_player_found_ball(scorer))
        await session.refresh()

    async def on_room_change(self, event: ChangeEvent) -> None:
        if event.type != "UPDATE" or not event.new:
            return
        session = self.session
        coordinator = session.coordinator
        row = event.new

        host = row.get("host_player_name")
        if host and host != session.host_player_name:
            session.set_host(host)

        member = session.is_member()
        if not member:
            logger.debug("%s not in roster of room %s yet", session.player_name, session.pin)
            return

        if not session.is_host and row.get("total_rounds"):
            coordinator.total_rounds = int(row["total_rounds"])

        if row.get("game_started") and not session.game_started:
            session.game_started = True
            session.start_countdown()
        elif not row.get("game_started") and session.game_started:
            logger.info("Room %s was reset, returning to the lobby", session.pin)
            session.game_started = False
            coordinator.reset_local()
            return

        if row.get("game_completed"):
            if not coordinator.game_completed:
                coordinator.mark_completed()
            return

        current_round = row.get("current_round") or 0
        if not session.is_host and current_round > coordinator.current_round:
            await coordinator.follow_round(current_round)
            return

        url = row.get("current_image_url")
        position = row.get("current_answer_position")
        if url and position and coordinator.image_url is None:
            box = position if isinstance(position, BoundingBox) else BoundingBox.from_mapping(position)
            coordinator.adopt_shared(url, box)
