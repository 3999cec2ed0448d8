"""Records held by the room store and passed between game components."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BoundingBox:
    """Ball location as fractions (0.0 to 1.0) of the image width and height."""

    x_min: float
    y_min: float
    x_max: float
    y_max: float

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BoundingBox":
        try:
            return cls(
                x_min=float(data["x_min"]),
                y_min=float(data["y_min"]),
                x_max=float(data["x_max"]),
                y_max=float(data["y_max"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid bounding box: {data!r}") from exc

    def to_dict(self) -> Dict[str, float]:
        return {
            "x_min": self.x_min,
            "y_min": self.y_min,
            "x_max": self.x_max,
            "y_max": self.y_max,
        }

    def contains(self, x: float, y: float, tolerance: float = 0.0) -> bool:
        return (
            self.x_min - tolerance <= x <= self.x_max + tolerance
            and self.y_min - tolerance <= y <= self.y_max + tolerance
        )


@dataclass
class Room:
    id: int
    pin_code: str
    host_player_name: str
    total_rounds: int = 5
    current_round: int = 0
    is_active: bool = True
    game_started: bool = False
    game_completed: bool = False
    current_image_url: Optional[str] = None
    current_answer_position: Optional[BoundingBox] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def shared_image(self) -> Optional["CachedImage"]:
        if self.current_image_url and self.current_answer_position:
            return CachedImage(self.current_image_url, self.current_answer_position)
        return None

    def row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RoomPlayer:
    id: int
    room_id: int
    player_name: str
    score: int = 0
    last_round_time: Optional[int] = None
    joined_at: datetime = field(default_factory=utcnow)

    def row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SavedImage:
    url: str
    answer_position: BoundingBox
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "answerPosition": self.answer_position.to_dict()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SavedImage":
        return cls(
            url=str(data["url"]),
            answer_position=BoundingBox.from_mapping(data["answerPosition"]),
        )

    def row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CachedImage:
    """An image URL paired with its resolved ball location."""

    url: str
    bbox: BoundingBox


@dataclass
class ChangeEvent:
    """One row change published by the room store."""

    table: str
    type: str  # "INSERT", "UPDATE" or "DELETE"
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    pin: Optional[str] = None
