"""Round coordinator: image acquisition, ball location, timer and hit resolution."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Awaitable, Optional, Set

from .errors import MalformedResponseError, NotHostError, ServiceError, WheresBallError
from .game import RoundState, RoundTimer, is_hit, pinpoint_box, score_for
from .models import BoundingBox, CachedImage
from .services import IMAGE_PROMPT, IMAGE_SIZE, INFERENCE_STEPS

if TYPE_CHECKING:
    from .session import PlayerSession

logger = logging.getLogger(__name__)

LOADING_QUOTES = (
    "Ball is rolling around...",
    "Ball is bouncing somewhere...",
    "Don't rush me, I'm generating...",
    "Putting the 'art' in 'artificial intelligence'...",
    "Hiding ball better than my last payslip...",
    "Chope-ing this loading screen with a tissue packet...",
    "Checking if there's a queue for this image...",
    "Waking up the model... need Kopi O gao...",
    "Drawing more details than a BTO floor plan...",
    "Let me cook...",
    "Is it hot in here or is the GPU running?",
    "Shuffling pixels... harder than shuffling for NDP tickets.",
    "Adding a little bit of Singlish spice...",
    "Please wait, calculating the best place to hide from the sun.",
    "Trying not to draw another ERP gantry...",
    "Hope this loads faster than the BKE on a Friday...",
    "Asking the AI for a 5-star rating...",
    "Making sure ball is not in a restricted area...",
    "Rendering... faster than my cai fan order, hopefully.",
    "Final checks... confirm can, plus chop!",
)

_PLAYABLE = (RoundState.ACTIVE, RoundState.AWAITING_DETECTION)


class PendingDetection:
    """Holds the in-flight ball detection for one round token.

    The detection task is shared: the round waits on it to go active, and a
    click that lands before it finishes waits on the same task instead of
    asking the locator again.
    """

    def __init__(self) -> None:
        self.token: Optional[int] = None
        self.task: Optional[asyncio.Task] = None

    def start(self, token: int, coro: Awaitable[BoundingBox]) -> asyncio.Task:
        self.token = token
        self.task = asyncio.ensure_future(coro)
        return self.task

    def get(self, token: int) -> Optional[asyncio.Task]:
        if self.task is None or self.token != token:
            return None
        return self.task

    def clear(self) -> None:
        # A stale detection keeps running; its result is dropped by token.
        self.token = None
        self.task = None

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.clear()


class RoundCoordinator:
    """Drives one player's rounds: Idle -> AcquiringImage -> AwaitingDetection -> Active -> Hit | TimedOut."""

    def __init__(self, session: "PlayerSession") -> None:
        settings = session.settings
        self.session = session
        self.state = RoundState.IDLE
        self.current_round = 1
        self.total_rounds = settings.default_rounds
        self.game_completed = False

        self.image_url: Optional[str] = None
        self.answer_position: Optional[BoundingBox] = None
        self.round_active = False
        self.round_completed = False
        self.round_started_at: Optional[float] = None
        self.last_score: Optional[int] = None

        self.transitioning = False
        self.loading = False
        self.has_api_error = False
        self.background_detecting = False
        self.waiting_for_location = False
        self.detecting = False
        self.use_new_image = False
        self.pinpoint_mode = False
        self.loading_quote = LOADING_QUOTES[0]

        self.used_image_urls: Set[str] = set()
        self.cached_image: Optional[CachedImage] = None
        self.pending = PendingDetection()

        self._token = 0
        self._poll_task: Optional[asyncio.Task] = None
        self.timer = RoundTimer(
            seconds=settings.round_seconds,
            tick=settings.tick_seconds,
            warning_at=settings.warning_at,
            on_tick=self._on_timer_tick,
            on_warning=self._on_timer_warning,
            on_expire=self._on_timer_expired,
        )

    @property
    def time_remaining(self) -> int:
        return self.timer.remaining

    def _set_state(self, state: RoundState) -> None:
        self.state = state
        self.session.publish(
            {"type": "round", "state": state.value, "round": self.current_round}
        )

    # ---- starting rounds ----

    async def start_new_round(self, increment: bool = False) -> None:
        if self.transitioning:
            logger.info("Round change requested while transitioning, ignoring")
            return
        session = self.session
        if increment and session.multiplayer and not session.is_host:
            raise NotHostError("advance to the next round")

        self.timer.stop()
        self._cancel_poll()

        if increment:
            next_round = self.current_round + 1
            if next_round > self.total_rounds:
                await self._complete_game()
                return
            self.current_round = next_round

        token = self._begin_acquisition()

        if increment and session.multiplayer:
            try:
                await session.rooms.advance_round(session.pin, self.current_round)
            except WheresBallError as exc:
                session.log_error("Error advancing room round", exc)

        try:
            await self._acquire(token)
        except ServiceError as exc:
            self._fail(token, "Image generation failed. Click anywhere to retry.", exc)
        except WheresBallError as exc:
            self._fail(token, "Could not start the round. Click anywhere to retry.", exc)
        except Exception as exc:
            logger.exception("Unexpected error starting round %d", self.current_round)
            self._fail(token, "Could not start the round. Click anywhere to retry.", exc)

    def _begin_acquisition(self) -> int:
        self._token += 1
        self.transitioning = True
        self.loading = True
        self.has_api_error = False
        self.round_completed = False
        self.round_active = False
        self.round_started_at = None
        self.answer_position = None
        self.image_url = None
        self.last_score = None
        self.background_detecting = False
        self.timer.reset()
        self.pending.clear()
        self.loading_quote = random.choice(LOADING_QUOTES)
        self._set_state(RoundState.ACQUIRING_IMAGE)
        return self._token

    async def _complete_game(self) -> None:
        session = self.session
        logger.info("Game completed after %d rounds", self.total_rounds)
        self.game_completed = True
        self.current_round = self.total_rounds
        self.round_active = False
        self.transitioning = False
        self.loading = False
        self._set_state(RoundState.GAME_COMPLETED)
        session.spawn(session.audio.announce_game_complete())
        if session.multiplayer:
            try:
                await session.rooms.complete_game(session.pin, self.total_rounds)
            except WheresBallError as exc:
                session.log_error("Error marking game completed", exc)

    async def _acquire(self, token: int) -> None:
        session = self.session
        if session.multiplayer:
            room = await session.rooms.get_room(session.pin)
            shared = room.shared_image
            if shared is not None:
                self.adopt_shared(shared.url, shared.bbox)
                return
            if room.host_player_name != session.player_name:
                self._wait_for_host(token)
                return
            logger.info("Host %s acquiring image for round %d", session.player_name, self.current_round)

        if not self.use_new_image and self.cached_image is not None:
            cached = self.cached_image
            await self._publish(token, cached.url, cached.bbox)
            self._activate(token, cached.url, cached.bbox, "FIND BALL... GO!")
            return

        if not self.use_new_image:
            image = session.library.pick_unused(self.used_image_urls)
            if image is not None:
                self.used_image_urls.add(image.url)
                self.cached_image = CachedImage(image.url, image.answer_position)
                await self._publish(token, image.url, image.answer_position)
                self._activate(
                    token, image.url, image.answer_position, "Using saved image... FIND BALL... GO!"
                )
                return
            logger.info("No unused saved images, generating a new one")

        await self._generate(token)

    async def _publish(self, token: int, url: str, box: BoundingBox) -> None:
        session = self.session
        if not session.multiplayer or token != self._token:
            return
        try:
            await session.rooms.publish_image(session.pin, url, box)
        except WheresBallError as exc:
            session.log_error("Error saving image to room", exc)

    def _activate(
        self,
        token: int,
        url: str,
        box: BoundingBox,
        message: Optional[str],
        loaded: bool = True,
    ) -> bool:
        if token != self._token:
            return False
        self.image_url = url
        self.answer_position = box
        self.round_active = True
        self.transitioning = False
        self.has_api_error = False
        self.background_detecting = False
        if loaded:
            self.loading = False
        self.round_started_at = asyncio.get_running_loop().time()
        self.timer.start()
        self._set_state(RoundState.ACTIVE)
        if message:
            self.session.show_status(message, 2.0)
        return True

    def _fail(self, token: int, message: str, exc: BaseException) -> None:
        if token != self._token:
            logger.info("Ignoring failure from an abandoned round: %s", exc)
            return
        self.timer.stop()
        self.round_active = False
        self.transitioning = False
        self.loading = False
        self.background_detecting = False
        self.has_api_error = True
        self.session.log_error(message, exc)
        self._set_state(RoundState.ERROR)
        self.session.show_status(message, 0)

    # ---- multiplayer shared image ----

    def adopt_shared(self, url: str, box: BoundingBox) -> bool:
        """Take the room's published image; a no-op once this round has one."""

        if self.image_url is not None or self.game_completed:
            return False
        self._cancel_poll()
        self.used_image_urls.add(url)
        return self._activate(self._token, url, box, "Using shared image... FIND BALL... GO!")

    def _wait_for_host(self, token: int) -> None:
        self._set_state(RoundState.WAITING_FOR_HOST)
        self.session.show_status("Waiting for host to generate image...", 2.0)
        self._poll_task = self.session.spawn(self._poll_for_shared_image(token))

    async def _poll_for_shared_image(self, token: int) -> None:
        session = self.session
        settings = session.settings
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.poll_timeout
        while loop.time() < deadline:
            await asyncio.sleep(settings.poll_interval)
            if token != self._token or self.image_url is not None:
                return
            try:
                room = await session.rooms.get_room(session.pin)
            except WheresBallError as exc:
                logger.warning("Polling room %s failed: %s", session.pin, exc)
                continue
            shared = room.shared_image
            if shared is not None:
                logger.info("Host published image, loading %s", shared.url)
                self.adopt_shared(shared.url, shared.bbox)
                return

        if token == self._token and self.image_url is None:
            self.transitioning = False
            self.loading = False
            self.has_api_error = True
            self._set_state(RoundState.ERROR)
            session.show_status("Still waiting for the host. Click to try again.", 0)

    def _cancel_poll(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def follow_round(self, round_number: int) -> bool:
        """Catch up with a round the host has advanced to."""

        if round_number <= self.current_round or self.game_completed:
            return False
        logger.info("Following host to round %d", round_number)
        self.current_round = round_number
        self.timer.stop()
        self._cancel_poll()
        self.transitioning = False
        await self.start_new_round()
        return True

    def mark_completed(self) -> None:
        self.timer.stop()
        self._cancel_poll()
        self.game_completed = True
        self.round_active = False
        self.current_round = self.total_rounds
        self._set_state(RoundState.GAME_COMPLETED)

    def reset_local(self) -> None:
        self.timer.reset()
        self._cancel_poll()
        self._token += 1
        self.pending.clear()
        self.current_round = 1
        self.game_completed = False
        self.round_completed = False
        self.round_active = False
        self.transitioning = False
        self.loading = False
        self.has_api_error = False
        self.background_detecting = False
        self.image_url = None
        self.answer_position = None
        self.used_image_urls.clear()
        self._set_state(RoundState.IDLE)

    # ---- generation and detection ----

    async def _generate(self, token: int) -> None:
        session = self.session
        session.show_status("Generating a new scene...", 0)
        result = await session.generator.generate(IMAGE_PROMPT, IMAGE_SIZE, INFERENCE_STEPS)
        if not result.success or not result.image_url:
            raise MalformedResponseError(
                result.error or "Image generation failed, no image data returned"
            )
        if token != self._token:
            logger.info("Discarding image generated for an abandoned round")
            return

        url = result.image_url
        logger.info("Generated new image %s", url)
        self.image_url = url
        self.used_image_urls.add(url)
        self.transitioning = False
        self.background_detecting = True
        self._set_state(RoundState.AWAITING_DETECTION)
        task = self.pending.start(token, self._locate(url))
        session.spawn(self._finish_detection(token, url, task))

    async def _locate(self, url: str) -> BoundingBox:
        result = await self.session.locator.locate(url)
        if not result.success or result.bounding_box is None:
            raise MalformedResponseError(result.error or "Failed to detect ball location")
        return result.bounding_box

    async def _finish_detection(self, token: int, url: str, task: asyncio.Task) -> None:
        session = self.session
        try:
            box = await asyncio.shield(task)
        except ServiceError as exc:
            if token == self._token:
                self._fail(token, "Failed to detect ball. Click to retry.", exc)
            return

        await session.library.save(url, box)
        if token != self._token:
            logger.info("Detection finished for an abandoned round, image saved only")
            return
        await self._publish(token, url, box)
        self.background_detecting = False
        if self.state is RoundState.AWAITING_DETECTION:
            self.cached_image = CachedImage(url, box)
            self._activate(token, url, box, None, loaded=False)

    def image_loaded(self) -> None:
        self.loading = False
        if self.background_detecting or self.round_active:
            self.session.show_status("FIND BALL... GO!", 2.0)

    # ---- clicks ----

    async def click(self, x: float, y: float) -> str:
        if self.pinpoint_mode:
            return await self._pinpoint(x, y)

        if self.has_api_error:
            await self.start_new_round()
            return "retry"

        if not self.round_active and not self.background_detecting:
            return "ignored"

        box = self.answer_position
        if box is None:
            token = self._token
            task = self.pending.get(token)
            if task is None:
                return "ignored"
            self.waiting_for_location = True
            try:
                box = await asyncio.shield(task)
            except ServiceError as exc:
                self.session.log_error("Failed to get location on click", exc)
                self.session.show_status("Sorry, couldn't verify the location.", 2.0)
                return "error"
            finally:
                self.waiting_for_location = False
            if token != self._token:
                return "ignored"

        return await self._resolve_hit(x, y, box)

    async def _resolve_hit(self, x: float, y: float, box: BoundingBox) -> str:
        session = self.session
        if self.state not in _PLAYABLE:
            return "ignored"
        if not is_hit(x, y, box, session.settings.hit_tolerance):
            session.show_status("Not quite... Keep looking!", 1.5)
            return "miss"

        self.timer.stop()
        now = asyncio.get_running_loop().time()
        elapsed = now - self.round_started_at if self.round_started_at is not None else 0.0
        points = score_for(self.timer.remaining)

        self.cached_image = None
        self.answer_position = box
        self.round_active = False
        self.round_completed = True
        self.last_score = points
        self._set_state(RoundState.HIT)
        session.credit_local(points)
        session.show_status(f"You found Ball! +{points} points! ({int(elapsed)}s)", 0)
        session.audio.play_sound("success")
        session.spawn(session.audio.announce_round_complete())

        if session.multiplayer:
            try:
                await session.rooms.add_score(
                    session.pin, session.player_name, points, int(elapsed * 1000)
                )
            except WheresBallError as exc:
                session.log_error("Error updating score", exc)
        return "hit"

    # ---- timer cues ----

    def _on_timer_tick(self, remaining: int) -> None:
        self.session.publish({"type": "timer", "remaining": remaining})

    def _on_timer_warning(self) -> None:
        self.session.audio.play_sound("timer-warning")

    def _on_timer_expired(self) -> None:
        session = self.session
        session.audio.play_sound("times-up")
        session.spawn(session.audio.announce_times_up())
        self.round_active = False
        self.round_completed = True
        self._set_state(RoundState.TIMED_OUT)
        session.show_status("Time's up! Try again.", 0)

    # ---- image tools ----

    async def redetect(self) -> Optional[BoundingBox]:
        """Ask the locator again for the current image and store the new position."""

        session = self.session
        url = self.image_url
        if not url or self.detecting:
            return None
        self.detecting = True
        self.waiting_for_location = True
        session.show_status("Detecting ball position...", 0)
        try:
            box = await self._locate(url)
        except ServiceError as exc:
            session.log_error("Error detecting ball position", exc)
            session.show_status("Failed to detect ball position.", 3.0)
            return None
        finally:
            self.detecting = False
            self.waiting_for_location = False

        self.cached_image = CachedImage(url, box)
        if self.image_url == url:
            self.answer_position = box
        await session.library.update_position(url, box)
        session.show_status("Ball detected! Position updated.", 3.0)
        return box

    def toggle_pinpoint(self) -> bool:
        self.pinpoint_mode = not self.pinpoint_mode
        if self.pinpoint_mode:
            self.session.show_status("Click on the image to pinpoint the ball location", 3.0)
        else:
            self.session.show_status("Manual pinpoint mode disabled", 2.0)
        return self.pinpoint_mode

    async def _pinpoint(self, x: float, y: float) -> str:
        url = self.image_url
        if not url:
            return "ignored"
        box = pinpoint_box(x, y)
        await self.session.library.update_position(url, box)
        self.answer_position = box
        self.pinpoint_mode = False
        self.session.show_status("Ball location manually pinpointed!", 2.0)
        return "pinpointed"

    # ---- reset / teardown ----

    async def reset_game(self) -> None:
        session = self.session
        if session.multiplayer:
            await session.rooms.require_host(session.pin, session.player_name, "reset the game")
        logger.info("Resetting game to round 1")
        self.reset_local()
        if session.multiplayer:
            await session.rooms.reset_game(session.pin)
            session.game_started = False
            return
        await self.start_new_round()

    def close(self) -> None:
        self.timer.stop()
        self._cancel_poll()
        self.pending.cancel()
