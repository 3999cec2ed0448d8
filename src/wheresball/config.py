"""Runtime configuration read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    local_store_path: Optional[str] = None

    fal_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    elevenlabs_api_key: Optional[str] = None

    # Game timings (seconds)
    round_seconds: int = 30
    tick_seconds: float = 1.0
    warning_at: int = 5
    poll_interval: float = 2.0
    poll_timeout: float = 30.0
    countdown_from: int = 3
    countdown_step: float = 1.0
    notification_seconds: float = 3.0
    hit_tolerance: float = 0.05
    default_rounds: int = 5

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            host=env.get("WHERESBALL_HOST", "0.0.0.0"),
            port=int(env.get("WHERESBALL_PORT", "8000")),
            log_level=env.get("WHERESBALL_LOG_LEVEL", "INFO").upper(),
            local_store_path=env.get("WHERESBALL_LOCAL_STORE") or None,
            fal_key=env.get("FAL_KEY") or None,
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            elevenlabs_api_key=env.get("ELEVENLABS_API_KEY") or None,
        )
