"""Saved images with known ball positions, reused across single-player games."""

from __future__ import annotations

import logging
import random
from typing import Iterable, List, Optional, Sequence

from .errors import StoreError
from .fallback import LocalImageStore
from .models import BoundingBox, SavedImage
from .store import MemoryRoomStore

logger = logging.getLogger(__name__)

DEFAULT_IMAGES: Sequence[SavedImage] = ()


class SavedImageLibrary:
    """Reads and writes saved images, falling back to the local store on failure."""

    def __init__(
        self,
        store: MemoryRoomStore,
        local: Optional[LocalImageStore] = None,
        defaults: Sequence[SavedImage] = DEFAULT_IMAGES,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.local = local or LocalImageStore()
        self.defaults = list(defaults)
        self.images: List[SavedImage] = []
        self._rng = rng or random.Random()

    async def load(self) -> List[SavedImage]:
        try:
            images = await self.store.list_saved_images()
        except StoreError as exc:
            logger.error("Failed to load saved images, using local store: %s", exc)
            images = self.local.load()
            if not images:
                self.local.save(self.defaults)
        else:
            logger.info("Loaded %d saved images", len(images))
        self.images = images or list(self.defaults)
        return self.images

    async def save(self, url: str, box: BoundingBox) -> None:
        try:
            await self.store.insert_saved_image(url, box)
        except StoreError as exc:
            logger.error("Failed to save image %s, using local store: %s", url, exc)
            self.images = self.local.append(url, box)
        else:
            await self.load()

    async def update_position(self, url: str, box: BoundingBox) -> None:
        try:
            await self.store.update_saved_image(url, box)
        except StoreError as exc:
            logger.error("Failed to update image %s, using local store: %s", url, exc)
            self.images = self.local.update(url, box)
        else:
            await self.load()

    async def delete(self, url: str) -> None:
        try:
            await self.store.delete_saved_image(url)
        except StoreError as exc:
            logger.error("Failed to delete image %s, using local store: %s", url, exc)
            self.images = self.local.remove(url)
        else:
            await self.load()

    def pick_unused(self, used_urls: Iterable[str]) -> Optional[SavedImage]:
        used = set(used_urls)
        unused = [image for image in self.images if image.url not in used]
        if not unused:
            return None
        return self._rng.choice(unused)
