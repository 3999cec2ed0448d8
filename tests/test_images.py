"""Saved image library and on-device fallback store tests."""

import asyncio
import json
import random

from wheresball.fallback import SAVED_IMAGES_KEY, LocalImageStore
from wheresball.images import SavedImageLibrary
from wheresball.models import BoundingBox, SavedImage
from wheresball.store import MemoryRoomStore

from conftest import BrokenImageStore

BOX = BoundingBox(0.1, 0.1, 0.2, 0.2)
MOVED = BoundingBox(0.7, 0.7, 0.8, 0.8)


def test_saved_images_load_newest_first():
    async def run():
        library = SavedImageLibrary(MemoryRoomStore())
        await library.save("https://img.test/old.png", BOX)
        await library.save("https://img.test/new.png", BOX)
        return library.images

    images = asyncio.run(run())
    assert [image.url for image in images] == [
        "https://img.test/new.png",
        "https://img.test/old.png",
    ]


def test_pick_unused_skips_used_urls():
    library = SavedImageLibrary(MemoryRoomStore(), rng=random.Random(0))
    library.images = [
        SavedImage("https://img.test/a.png", BOX),
        SavedImage("https://img.test/b.png", BOX),
    ]
    picked = library.pick_unused({"https://img.test/a.png"})
    assert picked.url == "https://img.test/b.png"
    assert library.pick_unused({"https://img.test/a.png", "https://img.test/b.png"}) is None


def test_update_position_and_delete():
    async def run():
        library = SavedImageLibrary(MemoryRoomStore())
        await library.save("https://img.test/a.png", BOX)
        await library.update_position("https://img.test/a.png", MOVED)
        moved = list(library.images)
        await library.delete("https://img.test/a.png")
        return moved, library.images

    moved, remaining = asyncio.run(run())
    assert moved[0].answer_position == MOVED
    assert remaining == []


def test_unreachable_store_falls_back_to_local_defaults():
    defaults = [SavedImage("https://img.test/default.png", BOX)]
    local = LocalImageStore()

    async def run():
        library = SavedImageLibrary(BrokenImageStore(), local=local, defaults=defaults)
        return await library.load()

    images = asyncio.run(run())
    assert [image.url for image in images] == ["https://img.test/default.png"]
    assert [image.url for image in local.load()] == ["https://img.test/default.png"]


def test_writes_fall_back_to_local_store():
    local = LocalImageStore()

    async def run():
        library = SavedImageLibrary(BrokenImageStore(), local=local)
        await library.save("https://img.test/a.png", BOX)
        await library.update_position("https://img.test/a.png", MOVED)
        after_update = list(library.images)
        await library.delete("https://img.test/a.png")
        return after_update, library.images

    after_update, after_delete = asyncio.run(run())
    assert after_update[0].answer_position == MOVED
    assert after_delete == []
    assert local.load() == []


def test_local_store_persists_json(tmp_path):
    path = tmp_path / "state" / "local.json"
    store = LocalImageStore(path)
    store.append("https://img.test/a.png", BOX)

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload[SAVED_IMAGES_KEY] == [
        {
            "url": "https://img.test/a.png",
            "answerPosition": {"x_min": 0.1, "y_min": 0.1, "x_max": 0.2, "y_max": 0.2},
        }
    ]
    reopened = LocalImageStore(path).load()
    assert reopened[0].answer_position == BOX


def test_local_store_skips_malformed_entries(tmp_path):
    path = tmp_path / "local.json"
    path.write_text(
        json.dumps(
            {
                SAVED_IMAGES_KEY: [
                    {"url": "https://img.test/ok.png", "answerPosition": BOX.to_dict()},
                    {"url": "https://img.test/bad.png", "answerPosition": {"x_min": 0.1}},
                    {"answerPosition": BOX.to_dict()},
                ]
            }
        ),
        encoding="utf-8",
    )
    images = LocalImageStore(path).load()
    assert [image.url for image in images] == ["https://img.test/ok.png"]


def test_local_store_ignores_unreadable_file(tmp_path):
    path = tmp_path / "local.json"
    path.write_text("{not json", encoding="utf-8")
    assert LocalImageStore(path).load() == []
