from __future__ import annotations

import logging
import shutil
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("briefcast.core.config")

_PROJECT_ROOT = Path(__file__).parent.parent.parent
_ENV_LOCAL = _PROJECT_ROOT / ".env.local"
_ENV_FILE = _PROJECT_ROOT / ".env"

# Existing environment variables take precedence over both files
if _ENV_LOCAL.exists():
    load_dotenv(_ENV_LOCAL, override=False)
    log.info(f"[config] Loaded .env.local from {_ENV_LOCAL}")
if _ENV_FILE.exists():
    load_dotenv(_ENV_FILE, override=False)
    log.info(f"[config] Loaded .env from {_ENV_FILE}")


def _discover(binary: str) -> str:
    return shutil.which(binary) or binary


class AudioSettings(BaseSettings):
    """Immutable configuration for one episode assembly run.

    Every field can be overridden from the environment with the ``BRIEFCAST_``
    prefix (``BRIEFCAST_TARGET_LUFS=-14``). The instance is frozen; build a new
    one with ``model_copy(update=...)`` to vary a run.
    """

    # --- Loudness targets (EBU R128 / ITU-R BS.1770) ---
    TARGET_LUFS: float = Field(default=-16.0, ge=-70.0, le=0.0, description="Episode integrated loudness target")
    MAX_TRUE_PEAK_DBTP: float = Field(default=-1.0, ge=-20.0, le=0.0, description="True-peak ceiling in dBTP")
    LOUDNESS_RANGE_LU: float = Field(default=11.0, gt=0.0, le=50.0, description="Loudness range target for loudnorm")
    SKIP_TOLERANCE_LU: float = Field(default=1.0, ge=0.0, description="Skip re-encoding when already this close to target")
    CHUNK_HEADROOM_LU: float = Field(default=2.0, description="Chunk target = TARGET_LUFS + this")
    SECTION_HEADROOM_LU: float = Field(default=1.0, description="Section target = TARGET_LUFS + this")
    MUSIC_OFFSET_LU: float = Field(default=-4.0, le=0.0, description="Music target = TARGET_LUFS + this")

    # --- Music ---
    MUSIC_ENABLED: bool = True
    INCLUDE_INTRO_MUSIC: bool = True
    INCLUDE_OUTRO_MUSIC: bool = True
    INCLUDE_TRANSITIONS: bool = True
    MUSIC_KEY_PREFIX: str = "assets/music/"
    FADE_IN_SECONDS: float = Field(default=2.0, ge=0.0)
    FADE_OUT_SECONDS: float = Field(default=3.0, ge=0.0)
    EPISODE_FADE_OUT: bool = Field(
        default=True, description="Fade out the last FADE_OUT_SECONDS of the finished episode"
    )
    TRANSITION_SECONDS: float = Field(default=1.0, gt=0.0, description="Fixed length of transition stings")
    TRANSITION_MODE: Literal["cut", "duck"] = Field(
        default="cut",
        description="'cut' plays the sting between sections; 'duck' mixes it under the next section",
    )
    DUCK_MUSIC_VOLUME: float = Field(default=0.2, gt=0.0, le=1.0)

    # --- External tool ---
    FFMPEG_BIN: str = Field(default_factory=lambda: _discover("ffmpeg"))
    FFPROBE_BIN: str = Field(default_factory=lambda: _discover("ffprobe"))
    TOOL_TIMEOUT_SECONDS: float = Field(default=600.0, gt=0.0)
    PROBE_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0.0)
    OUTPUT_CODEC: str = "libmp3lame"
    OUTPUT_BITRATE: str = "192k"

    # --- Execution ---
    MAX_WORKERS: int = Field(default=4, ge=1, le=32, description="Concurrent chunk operations")
    SCRATCH_ROOT: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "briefcast")
    KEEP_INPUT_CHUNKS: bool = Field(default=False, description="Leave caller-supplied chunk files in place")

    model_config = SettingsConfigDict(
        env_prefix="BRIEFCAST_",
        env_file=(str(_ENV_LOCAL), str(_ENV_FILE)),
        extra="ignore",
        frozen=True,
    )

    @property
    def music_target_lufs(self) -> float:
        return self.TARGET_LUFS + self.MUSIC_OFFSET_LU

    @model_validator(mode="after")
    def _validate_headroom(self):
        if self.TARGET_LUFS + self.CHUNK_HEADROOM_LU > 0 or self.TARGET_LUFS + self.SECTION_HEADROOM_LU > 0:
            raise ValueError("chunk/section targets must stay below 0 LUFS")
        if self.SECTION_HEADROOM_LU > self.CHUNK_HEADROOM_LU:
            log.warning(
                "[config] SECTION_HEADROOM_LU (%s) exceeds CHUNK_HEADROOM_LU (%s); sections will be pushed louder than chunks",
                self.SECTION_HEADROOM_LU,
                self.CHUNK_HEADROOM_LU,
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> AudioSettings:
    """Process-wide settings for callers; pipeline code receives settings explicitly."""
    return AudioSettings()


__all__ = ["AudioSettings", "get_settings"]
