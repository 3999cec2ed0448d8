"""Per-player audio session: sound effects, background music and announcements.

Playback itself happens in the browser. The session decides *what* should be
heard and hands cue events to ``emit``; announcements are synthesized through
the speech API, cached by text and voice settings, and shipped base64-encoded.
Every audio failure is logged and otherwise ignored.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any, Callable, Dict, Optional

from .errors import ServiceError
from .services import DEFAULT_VOICE_SETTINGS, SpeechSynthesizer

logger = logging.getLogger(__name__)

SOUND_EFFECTS: Dict[str, str] = {
    "timer-warning": "/audio/sfx/timer-warning.mp3",
    "times-up": "/audio/sfx/times-up.mp3",
    "success": "/audio/sfx/success.mp3",
    "button-click": "/audio/sfx/button-click.mp3",
}
MUSIC_PATH = "/audio/music/background.mp3"
MUSIC_LEVEL = 0.3


class Announcements:
    @staticmethod
    def countdown(number: int) -> str:
        return "Go!" if number == 0 else str(number)

    @staticmethod
    def round_complete() -> str:
        return "Round complete!"

    @staticmethod
    def player_found_ball(player_name: str) -> str:
        return f"{player_name} found the ball!"

    @staticmethod
    def times_up() -> str:
        return "Time's up!"

    @staticmethod
    def next_round() -> str:
        return "Next round starting soon!"

    @staticmethod
    def game_start() -> str:
        return "Game starting!"

    @staticmethod
    def game_complete() -> str:
        return "Game completed! Congratulations to all players!"

    @staticmethod
    def welcome() -> str:
        return "Welcome to Where's The Ball!"


COMMON_ANNOUNCEMENTS = (
    "Go!",
    "3",
    "2",
    "1",
    Announcements.round_complete(),
    Announcements.times_up(),
    Announcements.next_round(),
    Announcements.game_start(),
    Announcements.game_complete(),
    Announcements.welcome(),
)


def cache_key(text: str, voice_settings: Dict[str, Any]) -> str:
    raw = f"{text}_{json.dumps(voice_settings, sort_keys=True)}"
    return re.sub(r"[^a-zA-Z0-9]", "_", raw)


class AudioSession:
    """Audio state owned by one player session, alive between start() and close()."""

    def __init__(
        self,
        speech: Optional[SpeechSynthesizer] = None,
        emit: Optional[Callable[[Dict[str, Any]], None]] = None,
        volume: float = 0.7,
        muted: bool = False,
        voice_settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.speech = speech
        self.emit = emit or (lambda event: None)
        self.voice_settings = dict(voice_settings or DEFAULT_VOICE_SETTINGS)
        self.started = False
        self.music_playing = False
        self._volume = _clamp(volume)
        self._muted = muted
        self._speech_cache: Dict[str, bytes] = {}

    async def __aenter__(self) -> "AudioSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        self.play_music()

    async def close(self) -> None:
        if not self.started:
            return
        self.stop_music()
        self._speech_cache.clear()
        self.started = False

    # ---- mute / volume ----

    @property
    def muted(self) -> bool:
        return self._muted

    @muted.setter
    def muted(self, value: bool) -> None:
        self._muted = bool(value)
        if self._muted:
            self.stop_music()
        else:
            self.play_music()

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float) -> None:
        self._volume = _clamp(value)
        if self.music_playing:
            self.emit({"type": "music", "action": "volume", "volume": self.music_volume})

    @property
    def music_volume(self) -> float:
        return round(self._volume * MUSIC_LEVEL, 4)

    # ---- music and effects ----

    def play_music(self) -> None:
        if not self.started or self._muted or self.music_playing:
            return
        self.music_playing = True
        self.emit(
            {"type": "music", "action": "play", "src": MUSIC_PATH, "volume": self.music_volume}
        )

    def stop_music(self) -> None:
        if not self.music_playing:
            return
        self.music_playing = False
        self.emit({"type": "music", "action": "stop"})

    def play_sound(self, name: str) -> None:
        if not self.started or self._muted:
            return
        src = SOUND_EFFECTS.get(name)
        if src is None:
            logger.warning("Sound %s not registered, requesting default path", name)
            src = f"/audio/sfx/{name}.mp3"
        self.emit({"type": "sound", "name": name, "src": src, "volume": self._volume})

    # ---- speech ----

    async def _synthesize(self, text: str) -> bytes:
        key = cache_key(text, self.voice_settings)
        cached = self._speech_cache.get(key)
        if cached is not None:
            return cached
        if self.speech is None:
            raise ServiceError("Speech synthesis not configured")
        audio = await self.speech.synthesize(text, self.voice_settings)
        self._speech_cache[key] = audio
        return audio

    async def announce(self, text: str) -> None:
        if not self.started or self._muted:
            return
        try:
            audio = await self._synthesize(text)
        except ServiceError as exc:
            logger.warning("Failed to play announcement %r: %s", text, exc)
            return
        self.emit(
            {
                "type": "speech",
                "text": text,
                "contentType": "audio/mpeg",
                "audio": base64.b64encode(audio).decode("ascii"),
                "volume": self._volume,
            }
        )

    async def preload_common_announcements(self) -> None:
        if self.speech is None:
            return
        for text in COMMON_ANNOUNCEMENTS:
            try:
                await self._synthesize(text)
            except ServiceError as exc:
                logger.warning("Failed to preload %r: %s", text, exc)

    async def announce_countdown(self, number: int) -> None:
        await self.announce(Announcements.countdown(number))

    async def announce_player_found_ball(self, player_name: str) -> None:
        await self.announce(Announcements.player_found_ball(player_name))

    async def announce_round_complete(self) -> None:
        await self.announce(Announcements.round_complete())

    async def announce_times_up(self) -> None:
        await self.announce(Announcements.times_up())

    async def announce_game_complete(self) -> None:
        await self.announce(Announcements.game_complete())


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))
