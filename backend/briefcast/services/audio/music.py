"""Music bed lookup.

Music is a quality enhancement, not a correctness requirement: every failure
here turns into an explicit ``MusicAbsent`` value that the assembler skips.
Cancellation is the one thing that still propagates.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

from briefcast.core.config import AudioSettings
from .errors import MusicUnavailable, PipelineCancelled
from .ffmpeg import AudioTool, CancelToken
from .models import MusicAbsent, MusicLookup, MusicPresent
from .temp_assets import TemporaryAssetManager

log = logging.getLogger(__name__)

MUSIC_KINDS = ("intro", "outro", "transition")


class MusicStore(Protocol):
    def exists(self, key: str) -> bool: ...

    def fetch(self, key: str) -> bytes: ...


def candidate_keys(prefix: str, kind: str, index: Optional[int] = None) -> list[str]:
    """Storage keys to try, most specific first."""
    if kind not in MUSIC_KINDS:
        raise ValueError(f"unknown music kind {kind!r}")
    if kind == "transition":
        return [f"{prefix}transition-{index if index is not None else 1}.mp3", f"{prefix}transition.mp3"]
    return [f"{prefix}{kind}.mp3"]


class MusicLibrary:
    """Resolves logical music names to local, probed assets for one run."""

    def __init__(
        self,
        store: MusicStore,
        tool: AudioTool,
        scratch: TemporaryAssetManager,
        settings: AudioSettings,
    ) -> None:
        self.store = store
        self.tool = tool
        self.scratch = scratch
        self.settings = settings
        self._cache: Dict[str, MusicLookup] = {}

    def lookup(self, kind: str, index: Optional[int] = None, cancel: Optional[CancelToken] = None) -> MusicLookup:
        keys = candidate_keys(self.settings.MUSIC_KEY_PREFIX, kind, index)
        try:
            key = self._resolve(keys)
        except PipelineCancelled:
            raise
        except MusicUnavailable as e:
            log.warning(f"[music] {kind} unavailable: {e.message}")
            return MusicAbsent(key=keys[0], reason=e.message)
        except Exception as e:
            log.warning(f"[music] {kind} lookup failed for {keys}: {e}")
            return MusicAbsent(key=keys[0], reason=f"lookup failed: {e}")

        if key in self._cache:
            return self._cache[key]

        try:
            result: MusicLookup = self._download(kind, key, cancel)
        except PipelineCancelled:
            raise
        except Exception as e:
            log.warning(f"[music] {key} could not be prepared: {e}")
            result = MusicAbsent(key=key, reason=str(e))
        self._cache[key] = result
        return result

    def _resolve(self, keys: list[str]) -> str:
        for key in keys:
            if self.store.exists(key):
                return key
        raise MusicUnavailable(f"none of {', '.join(keys)} exist", assets=keys)

    def _download(self, kind: str, key: str, cancel: Optional[CancelToken]) -> MusicPresent:
        if cancel is not None:
            cancel.raise_if_cancelled("music download")
        data = self.store.fetch(key)
        if not data:
            raise MusicUnavailable(f"{key} is empty", assets=[key])
        local = self.scratch.allocate(f"music-{kind}")
        local.write_bytes(data)
        asset = self.tool.probe(local, cancel=cancel)
        log.info(f"[music] fetched {key} ({len(data)} bytes, {asset.duration_seconds:.2f}s)")
        return MusicPresent(key=key, asset=asset)


def absent(kind: str, reason: str, settings: AudioSettings) -> MusicAbsent:
    return MusicAbsent(key=candidate_keys(settings.MUSIC_KEY_PREFIX, kind)[0], reason=reason)


__all__ = ["MusicStore", "MusicLibrary", "MUSIC_KINDS", "candidate_keys", "absent"]
