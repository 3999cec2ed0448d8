"""Single-player round flow: acquisition, detection, clicks and timeouts."""

import asyncio
import dataclasses

import httpx

from wheresball.errors import ServiceError
from wheresball.game import RoundState
from wheresball.services import ImageGenerator
from wheresball.session import PlayerSession

from conftest import BALL, FAST, build_backend, wait_for

SAVED_URL = "https://img.test/saved.png"


async def _solo(backend, saved=()):
    for url in saved:
        await backend.store.insert_saved_image(url, BALL)
    session = await PlayerSession.solo(backend, "Ana")
    session.game_started = True
    return session


def test_saved_image_round_is_active_immediately():
    async def run():
        backend = build_backend()
        session = await _solo(backend, [SAVED_URL])
        coordinator = session.coordinator
        await coordinator.start_new_round()
        snapshot = (coordinator.state, coordinator.image_url, coordinator.timer.running)
        await session.close()
        return backend, snapshot

    backend, (state, url, running) = asyncio.run(run())
    assert state is RoundState.ACTIVE
    assert url == SAVED_URL
    assert running
    assert backend.generator.calls == 0


def test_hit_scores_and_invalidates_cache():
    async def run():
        session = await _solo(build_backend(), [SAVED_URL])
        coordinator = session.coordinator
        await coordinator.start_new_round()
        outcome = await coordinator.click(0.5, 0.5)
        result = (
            outcome,
            coordinator.state,
            coordinator.last_score,
            coordinator.cached_image,
            coordinator.timer.running,
            session.players,
            session.status_text,
        )
        await session.close()
        return result

    outcome, state, score, cached, running, players, status = asyncio.run(run())
    assert outcome == "hit"
    assert state is RoundState.HIT
    assert score == 400
    assert cached is None
    assert not running
    assert players[0]["score"] == 400
    assert status.startswith("You found Ball! +400 points!")


def test_miss_keeps_round_running():
    async def run():
        session = await _solo(build_backend(), [SAVED_URL])
        coordinator = session.coordinator
        await coordinator.start_new_round()
        outcome = await coordinator.click(0.05, 0.95)
        result = (outcome, coordinator.state, coordinator.timer.running, session.status_text)
        await session.close()
        return result

    outcome, state, running, status = asyncio.run(run())
    assert outcome == "miss"
    assert state is RoundState.ACTIVE
    assert running
    assert status == "Not quite... Keep looking!"


def test_clicks_outside_a_round_are_ignored():
    async def run():
        session = await _solo(build_backend())
        outcome = await session.coordinator.click(0.5, 0.5)
        await session.close()
        return outcome

    assert asyncio.run(run()) == "ignored"


def test_generated_image_waits_for_detection():
    async def run():
        backend = build_backend()
        backend.locator.gate = asyncio.Event()
        session = await _solo(backend)
        coordinator = session.coordinator
        await coordinator.start_new_round()
        waiting = (coordinator.state, coordinator.round_active, coordinator.timer.running)

        backend.locator.gate.set()
        await wait_for(lambda: coordinator.state is RoundState.ACTIVE)
        saved = [image.url for image in await backend.store.list_saved_images()]
        result = (waiting, coordinator.image_url, coordinator.answer_position, saved)
        await session.close()
        return result

    waiting, url, answer, saved = asyncio.run(run())
    assert waiting == (RoundState.AWAITING_DETECTION, False, False)
    assert url == "https://img.test/generated-1.png"
    assert answer == BALL
    assert saved == [url]


def test_click_during_detection_waits_for_location():
    async def run():
        backend = build_backend()
        backend.locator.gate = asyncio.Event()
        session = await _solo(backend)
        coordinator = session.coordinator
        await coordinator.start_new_round()

        click = asyncio.ensure_future(coordinator.click(0.5, 0.5))
        await asyncio.sleep(0.01)
        waiting = coordinator.waiting_for_location
        backend.locator.gate.set()
        outcome = await click
        result = (waiting, outcome, coordinator.state, len(backend.locator.calls))
        await session.close()
        return result

    waiting, outcome, state, locate_calls = asyncio.run(run())
    assert waiting
    assert outcome == "hit"
    assert state is RoundState.HIT
    assert locate_calls == 1


def test_generation_failure_enters_error_and_click_retries():
    async def run():
        backend = build_backend()
        backend.generator.error = ServiceError("Fal.ai API error: 500", status=500)
        session = await _solo(backend)
        coordinator = session.coordinator
        await coordinator.start_new_round()
        failed = (coordinator.state, coordinator.has_api_error, session.status_text, list(session.logs))

        backend.generator.error = None
        outcome = await coordinator.click(0.5, 0.5)
        await wait_for(lambda: coordinator.state is RoundState.ACTIVE)
        result = (failed, outcome, coordinator.has_api_error)
        await session.close()
        return result

    (state, has_error, status, logs), outcome, has_error_after = asyncio.run(run())
    assert state is RoundState.ERROR
    assert has_error
    assert status == "Image generation failed. Click anywhere to retry."
    assert logs[0].endswith("Fal.ai API error: 500")
    assert outcome == "retry"
    assert not has_error_after


def test_malformed_generation_reply_enters_error_and_recovers():
    async def run():
        backend = build_backend()
        generator = backend.generator
        backend.generator = ImageGenerator(
            "key", transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"[]"))
        )
        session = await _solo(backend)
        coordinator = session.coordinator
        coordinator.use_new_image = True
        await coordinator.start_new_round()
        failed = (coordinator.state, coordinator.transitioning, coordinator.has_api_error)

        backend.generator = generator
        outcome = await coordinator.click(0.5, 0.5)
        await wait_for(lambda: coordinator.state is RoundState.ACTIVE)
        await session.close()
        return failed, outcome

    (state, transitioning, has_error), outcome = asyncio.run(run())
    assert state is RoundState.ERROR
    assert not transitioning
    assert has_error
    assert outcome == "retry"


def test_unexpected_generator_error_does_not_wedge_rounds():
    async def run():
        backend = build_backend()
        backend.generator.error = RuntimeError("socket closed")
        session = await _solo(backend)
        coordinator = session.coordinator
        await coordinator.start_new_round()
        failed = (coordinator.state, coordinator.transitioning, session.status_text)
        await session.close()
        return failed

    state, transitioning, status = asyncio.run(run())
    assert state is RoundState.ERROR
    assert not transitioning
    assert status == "Could not start the round. Click anywhere to retry."


def test_detection_failure_enters_error():
    async def run():
        backend = build_backend()
        backend.locator.error = ServiceError("Gemini API error: 503", status=503)
        session = await _solo(backend)
        coordinator = session.coordinator
        await coordinator.start_new_round()
        await wait_for(lambda: coordinator.state is RoundState.ERROR)
        result = (coordinator.has_api_error, session.status_text, coordinator.background_detecting)
        await session.close()
        return result

    has_error, status, detecting = asyncio.run(run())
    assert has_error
    assert status == "Failed to detect ball. Click to retry."
    assert not detecting


def test_stale_generation_result_is_discarded():
    async def run():
        backend = build_backend()
        backend.generator.gate = asyncio.Event()
        session = await _solo(backend)
        coordinator = session.coordinator
        pending = asyncio.ensure_future(coordinator.start_new_round())
        await asyncio.sleep(0.01)
        coordinator.reset_local()
        backend.generator.gate.set()
        await pending
        result = (coordinator.state, coordinator.image_url, backend.locator.calls)
        await session.close()
        return result

    state, url, locate_calls = asyncio.run(run())
    assert state is RoundState.IDLE
    assert url is None
    assert locate_calls == []


def test_round_times_out_with_cues():
    settings = dataclasses.replace(FAST, round_seconds=2, tick_seconds=0.01, warning_at=1)

    async def run():
        session = await _solo(build_backend(settings), [SAVED_URL])
        events = session.listen()
        coordinator = session.coordinator
        await coordinator.start_new_round()
        await wait_for(lambda: coordinator.state is RoundState.TIMED_OUT)
        sounds = []
        ticks = []
        while not events.empty():
            event = events.get_nowait()
            if event["type"] == "sound":
                sounds.append(event["name"])
            elif event["type"] == "timer":
                ticks.append(event["remaining"])
        result = (sounds, ticks, coordinator.round_active, coordinator.round_completed, session.status_text)
        late_click = await coordinator.click(0.5, 0.5)
        await session.close()
        return result, late_click

    (sounds, ticks, active, completed, status), late_click = asyncio.run(run())
    assert sounds == ["timer-warning", "times-up"]
    assert ticks == [1, 0]
    assert not active
    assert completed
    assert status == "Time's up! Try again."
    assert late_click == "ignored"


def test_rounds_use_each_saved_image_once_then_generate():
    async def run():
        backend = build_backend()
        session = await _solo(backend, ["https://img.test/a.png", "https://img.test/b.png"])
        coordinator = session.coordinator
        seen = []
        await coordinator.start_new_round()
        seen.append(coordinator.image_url)
        await coordinator.click(0.5, 0.5)
        await coordinator.start_new_round(increment=True)
        seen.append(coordinator.image_url)
        await coordinator.click(0.5, 0.5)
        await coordinator.start_new_round(increment=True)
        seen.append(coordinator.image_url)
        result = (seen, coordinator.current_round, backend.generator.calls)
        await session.close()
        return result

    seen, current_round, generated = asyncio.run(run())
    assert sorted(seen[:2]) == ["https://img.test/a.png", "https://img.test/b.png"]
    assert seen[2] == "https://img.test/generated-1.png"
    assert current_round == 3
    assert generated == 1


def test_timed_out_round_reuses_cached_image():
    settings = dataclasses.replace(FAST, round_seconds=1, tick_seconds=0.01, warning_at=0)

    async def run():
        backend = build_backend(settings)
        session = await _solo(backend, ["https://img.test/a.png", "https://img.test/b.png"])
        coordinator = session.coordinator
        await coordinator.start_new_round()
        first = coordinator.image_url
        await wait_for(lambda: coordinator.state is RoundState.TIMED_OUT)
        await coordinator.start_new_round()
        second = coordinator.image_url
        await session.close()
        return first, second

    first, second = asyncio.run(run())
    assert first == second


def test_advancing_past_last_round_completes_game():
    async def run():
        backend = build_backend()
        session = await _solo(backend, [SAVED_URL])
        coordinator = session.coordinator
        coordinator.total_rounds = 1
        await coordinator.start_new_round()
        await coordinator.click(0.5, 0.5)
        await coordinator.start_new_round(increment=True)
        result = (
            coordinator.state,
            coordinator.game_completed,
            coordinator.current_round,
            backend.generator.calls,
        )
        await session.close()
        return result

    state, completed, current_round, generated = asyncio.run(run())
    assert state is RoundState.GAME_COMPLETED
    assert completed
    assert current_round == 1
    assert generated == 0


def test_new_image_option_skips_saved_images():
    async def run():
        backend = build_backend()
        session = await _solo(backend, [SAVED_URL])
        session.set_options(use_new_image=True)
        await session.coordinator.start_new_round()
        result = (session.coordinator.image_url, backend.generator.calls)
        await session.close()
        return result

    url, generated = asyncio.run(run())
    assert url == "https://img.test/generated-1.png"
    assert generated == 1


def test_manual_pinpoint_updates_saved_position():
    async def run():
        backend = build_backend()
        session = await _solo(backend, [SAVED_URL])
        coordinator = session.coordinator
        await coordinator.start_new_round()
        assert coordinator.toggle_pinpoint()
        outcome = await coordinator.click(0.1, 0.9)
        saved = await backend.store.list_saved_images()
        result = (outcome, coordinator.pinpoint_mode, coordinator.answer_position, saved[0].answer_position)
        await session.close()
        return result

    outcome, mode, answer, saved = asyncio.run(run())
    assert outcome == "pinpointed"
    assert not mode
    assert answer == saved
    assert round(answer.x_min, 6) == 0.09
    assert round(answer.y_max, 6) == 0.91


def test_redetect_replaces_saved_position():
    moved = dataclasses.replace(BALL, x_min=0.7, x_max=0.8)

    async def run():
        backend = build_backend()
        session = await _solo(backend, [SAVED_URL])
        coordinator = session.coordinator
        await coordinator.start_new_round()
        backend.locator.box = moved
        box = await coordinator.redetect()
        saved = await backend.store.list_saved_images()
        result = (box, coordinator.answer_position, saved[0].answer_position, session.status_text)
        await session.close()
        return result

    box, answer, saved, status = asyncio.run(run())
    assert box == moved
    assert answer == moved
    assert saved == moved
    assert status == "Ball detected! Position updated."


def test_solo_reset_starts_again_from_round_one():
    async def run():
        backend = build_backend()
        session = await _solo(backend, [SAVED_URL])
        coordinator = session.coordinator
        coordinator.total_rounds = 1
        await coordinator.start_new_round()
        await coordinator.click(0.5, 0.5)
        await coordinator.start_new_round(increment=True)
        await coordinator.reset_game()
        result = (coordinator.state, coordinator.current_round, coordinator.game_completed, coordinator.image_url)
        await session.close()
        return result

    state, current_round, completed, url = asyncio.run(run())
    assert state is RoundState.ACTIVE
    assert current_round == 1
    assert not completed
    assert url == SAVED_URL


def test_countdown_starts_the_first_round():
    async def run():
        session = await _solo(build_backend(), [SAVED_URL])
        session.game_started = False
        events = session.listen()
        await session.start_game()
        await wait_for(lambda: session.coordinator.state is RoundState.ACTIVE)
        spoken = []
        while not events.empty():
            event = events.get_nowait()
            if event["type"] == "speech":
                spoken.append(event["text"])
        result = (session.countdown, spoken)
        await session.close()
        return result

    countdown, spoken = asyncio.run(run())
    assert countdown is None
    assert spoken[:4] == ["3", "2", "1", "Go!"]
