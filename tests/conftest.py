import os
import shutil
import sys
from pathlib import Path

import pytest

# Ensure the backend package root is importable as 'briefcast.*'
WS_ROOT = Path(__file__).resolve().parents[1]
PKG_ROOT = WS_ROOT / "backend"
if str(PKG_ROOT) not in sys.path:
    sys.path.insert(0, str(PKG_ROOT))

# Guard against local modules shadowing third-party packages
import importlib as _importlib
_m = _importlib.import_module("pydub")  # should be the installed package
assert hasattr(_m, "AudioSegment"), "Local file/folder named 'pydub' is shadowing the real package."

from briefcast.core.config import AudioSettings, get_settings  # noqa: E402
from briefcast.services.audio.temp_assets import TemporaryAssetManager  # noqa: E402
from tests.helpers.fake_tool import FakeAudioTool  # noqa: E402


@pytest.fixture(autouse=True, scope="session")
def ensure_ffmpeg_on_path():
    """Point pydub at the ffmpeg binary when one is discoverable. No-op otherwise."""
    from pydub import AudioSegment

    ffmpeg = shutil.which("ffmpeg")
    if ffmpeg:
        AudioSegment.converter = ffmpeg
        AudioSegment.ffmpeg = ffmpeg


@pytest.fixture(autouse=True)
def clean_briefcast_env(monkeypatch):
    """Keep developer BRIEFCAST_* variables from leaking into settings under test."""
    for key in list(os.environ):
        if key.startswith("BRIEFCAST_") or key in ("MUSIC_STORE_BACKEND", "MUSIC_LOCAL_DIR"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> AudioSettings:
    """Default settings with scratch under the test's tmp_path.

    Binaries are named explicitly so tests never depend on PATH lookups.
    """
    return AudioSettings(
        SCRATCH_ROOT=tmp_path / "scratch",
        FFMPEG_BIN="ffmpeg",
        FFPROBE_BIN="ffprobe",
        MAX_WORKERS=2,
    )


@pytest.fixture
def fake_tool(settings) -> FakeAudioTool:
    return FakeAudioTool(settings)


@pytest.fixture
def scratch(settings):
    """A run-scoped scratch manager, released when the test ends."""
    manager = TemporaryAssetManager(settings.SCRATCH_ROOT, "test-run")
    try:
        yield manager
    finally:
        manager.release_all()


def scratch_leftovers(root: Path, run_id: str) -> list:
    """Every file under ``root`` that carries ``run_id`` in its path."""
    root = Path(root)
    if not root.exists():
        return []
    return [p for p in root.rglob("*") if p.is_file() and run_id in str(p)]
