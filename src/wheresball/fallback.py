"""On-device key-value store used when the room store is unreachable."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .models import BoundingBox, SavedImage

logger = logging.getLogger(__name__)

SAVED_IMAGES_KEY = "savedImages"


class LocalImageStore:
    """Keeps the saved-image list in a JSON file, or in memory without a path."""

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = Path(path) if path else None
        self._memory: Dict[str, Any] = {}

    def _read(self) -> Dict[str, Any]:
        if self.path is None:
            return self._memory
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("Ignoring unreadable local store %s: %s", self.path, exc)
            return {}

    def _write(self, data: Dict[str, Any]) -> None:
        if self.path is None:
            self._memory = data
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, separators=(",", ":")), encoding="utf-8")

    def load(self) -> List[SavedImage]:
        images: List[SavedImage] = []
        for entry in self._read().get(SAVED_IMAGES_KEY, []):
            try:
                images.append(SavedImage.from_dict(entry))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed saved image entry: %s", exc)
        return images

    def save(self, images: List[SavedImage]) -> None:
        data = self._read()
        data[SAVED_IMAGES_KEY] = [image.to_dict() for image in images]
        self._write(data)

    def append(self, url: str, box: BoundingBox) -> List[SavedImage]:
        images = self.load()
        images.append(SavedImage(url=url, answer_position=box))
        self.save(images)
        return images

    def update(self, url: str, box: BoundingBox) -> List[SavedImage]:
        images = self.load()
        for image in images:
            if image.url == url:
                image.answer_position = box
                self.save(images)
                break
        return images

    def remove(self, url: str) -> List[SavedImage]:
        images = [image for image in self.load() if image.url != url]
        self.save(images)
        return images
