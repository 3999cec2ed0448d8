"""Shared fakes for the image, detection and speech collaborators."""

from __future__ import annotations

import asyncio
import random
import time
from typing import Callable, List, Optional

import pytest

from wheresball.config import Settings
from wheresball.errors import StoreError
from wheresball.fallback import LocalImageStore
from wheresball.images import SavedImageLibrary
from wheresball.models import BoundingBox
from wheresball.rooms import RoomManager
from wheresball.services import DetectionResult, GenerationResult
from wheresball.session import Backend
from wheresball.store import MemoryRoomStore

BALL = BoundingBox(x_min=0.4, y_min=0.4, x_max=0.6, y_max=0.6)

FAST = Settings(
    tick_seconds=1.0,
    poll_interval=0.01,
    poll_timeout=1.0,
    countdown_step=0.0,
    notification_seconds=0.05,
)


class FakeGenerator:
    def __init__(self, urls: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.urls = list(urls or [])
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls = 0

    async def generate(self, prompt="", image_size="", num_inference_steps=0):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        url = self.urls.pop(0) if self.urls else f"https://img.test/generated-{self.calls}.png"
        return GenerationResult(success=True, image_url=url, width=1024, height=1024)


class FakeLocator:
    def __init__(self, box: BoundingBox = BALL, error: Optional[Exception] = None):
        self.box = box
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []

    async def locate(self, image_url):
        self.calls.append(image_url)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return DetectionResult(success=True, bounding_box=self.box)


class FakeSpeech:
    def __init__(self) -> None:
        self.texts: List[str] = []

    async def synthesize(self, text, voice_settings=None):
        self.texts.append(text)
        return b"ID3-fake-mp3"


class BrokenImageStore(MemoryRoomStore):
    """Room store whose saved-image table is unreachable."""

    async def list_saved_images(self):
        raise StoreError("saved_images unavailable")

    async def insert_saved_image(self, url, box):
        raise StoreError("saved_images unavailable")

    async def update_saved_image(self, url, box):
        raise StoreError("saved_images unavailable")

    async def delete_saved_image(self, url):
        raise StoreError("saved_images unavailable")


def build_backend(settings: Settings = FAST, store: Optional[MemoryRoomStore] = None) -> Backend:
    store = store or MemoryRoomStore()
    return Backend(
        settings=settings,
        store=store,
        rooms=RoomManager(store, rng=random.Random(7)),
        library=SavedImageLibrary(store, LocalImageStore(), rng=random.Random(3)),
        generator=FakeGenerator(),
        locator=FakeLocator(),
        speech=FakeSpeech(),
    )


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def poll_until(fetch: Callable[[], dict], predicate: Callable[[dict], bool], timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    state = fetch()
    while not predicate(state):
        if time.monotonic() > deadline:
            raise AssertionError(f"state never matched: {state}")
        time.sleep(0.01)
        state = fetch()
    return state


@pytest.fixture
def backend() -> Backend:
    return build_backend()
