"""Runs the pipeline against real ffmpeg/ffprobe binaries.

Skipped when either binary is missing from PATH.
"""

import shutil

import pytest

from briefcast.services.audio.ffmpeg import FfmpegTool
from briefcast.services.audio.models import NormalizationLevel
from briefcast.services.audio.normalizer import Normalizer, target_for
from briefcast.services.audio.orchestrator import EpisodePipeline
from infrastructure.music_store import LocalMusicStore
from tests.conftest import scratch_leftovers
from tests.helpers.audio import make_tone

pytestmark = [
    pytest.mark.ffmpeg,
    pytest.mark.skipif(
        not (shutil.which("ffmpeg") and shutil.which("ffprobe")), reason="ffmpeg/ffprobe not available"
    ),
]


def test_probe_and_measure(tmp_path, settings):
    tool = FfmpegTool(settings)
    src = make_tone(tmp_path / "tone.mp3", ms=3000, dbfs=-24.0)
    asset = tool.probe(src)
    assert asset.codec == "mp3"
    assert asset.sample_rate == 44100
    assert asset.duration_seconds == pytest.approx(3.0, abs=0.2)

    m = tool.measure_loudness(src, target_for(settings, NormalizationLevel.EPISODE))
    assert -40.0 < m.integrated_lufs < -10.0


def test_normalize_lands_near_target(tmp_path, settings):
    tool = FfmpegTool(settings)
    src = tool.probe(make_tone(tmp_path / "quiet.mp3", ms=4000, dbfs=-30.0))
    target = target_for(settings, NormalizationLevel.EPISODE)

    result = Normalizer(tool, settings).normalize(src, target, tmp_path / "out.mp3", verify=True)

    assert not result.skipped
    assert result.after is not None
    assert result.after.integrated_lufs == pytest.approx(target.lufs, abs=1.5)
    assert result.after.true_peak_dbtp <= target.max_true_peak_dbtp + 0.5


def test_full_episode_with_intro(tmp_path, settings):
    chunks = [
        make_tone(tmp_path / "in" / f"chunk-{i}.mp3", ms=2500, freq=300 + 100 * i, dbfs=level)
        for i, level in enumerate([-18.0, -28.0, -22.0, -25.0])
    ]
    make_tone(tmp_path / "music" / "assets" / "music" / "intro.mp3", ms=3000, freq=220.0, dbfs=-12.0)

    pipeline = EpisodePipeline(settings, music_store=LocalMusicStore(tmp_path / "music"), run_id="e2e")
    episode = pipeline.run_chunks(chunks, tmp_path / "episode.mp3", section_boundaries=[2])

    assert episode.path == tmp_path / "episode.mp3"
    assert episode.path.exists() and episode.file_size_bytes > 0
    assert episode.music_segments_used == 1
    assert [round(s.start_seconds) for s in episode.sections] == [3, 8]
    assert episode.duration_seconds == pytest.approx(13.0, abs=0.6)

    final = episode.normalization[-1]
    assert final.target.level is NormalizationLevel.EPISODE
    assert final.after.integrated_lufs == pytest.approx(settings.TARGET_LUFS, abs=1.5)
    assert scratch_leftovers(settings.SCRATCH_ROOT, "e2e") == []
