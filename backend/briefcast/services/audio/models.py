from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union


class SectionType(str, Enum):
    INTRO = "intro"
    TOPIC = "topic"
    SYNTHESIS = "synthesis"


class NormalizationLevel(str, Enum):
    CHUNK = "chunk"
    SECTION = "section"
    EPISODE = "episode"
    MUSIC = "music"


@dataclass(frozen=True)
class LoudnessMeasurement:
    integrated_lufs: float
    true_peak_dbtp: float
    loudness_range_lu: float
    threshold_lufs: float
    target_offset_lu: float

    @property
    def is_silent(self) -> bool:
        return math.isinf(self.integrated_lufs)

    def to_dict(self) -> Dict[str, float]:
        return {
            "integrated_lufs": self.integrated_lufs,
            "true_peak_dbtp": self.true_peak_dbtp,
            "loudness_range_lu": self.loudness_range_lu,
            "threshold_lufs": self.threshold_lufs,
            "target_offset_lu": self.target_offset_lu,
        }


@dataclass(frozen=True)
class AudioAsset:
    """One audio file on disk plus the stream facts the pipeline relies on."""

    path: Path
    duration_seconds: float
    sample_rate: int
    channels: int
    codec: str
    bitrate: Optional[int] = None
    loudness: Optional[LoudnessMeasurement] = None

    @property
    def asset_id(self) -> str:
        return self.path.name

    @property
    def format_key(self) -> Tuple[str, int, int]:
        return (self.codec, self.sample_rate, self.channels)

    def is_compatible(self, other: "AudioAsset") -> bool:
        return self.format_key == other.format_key

    def with_loudness(self, loudness: LoudnessMeasurement) -> "AudioAsset":
        return replace(self, loudness=loudness)

    def moved_to(self, path: Path) -> "AudioAsset":
        return replace(self, path=Path(path))


@dataclass(frozen=True)
class NormalizationTarget:
    lufs: float
    max_true_peak_dbtp: float
    level: NormalizationLevel
    loudness_range_lu: float = 11.0


@dataclass
class NormalizationResult:
    input_asset: AudioAsset
    output_asset: AudioAsset
    target: NormalizationTarget
    before: LoudnessMeasurement
    skipped: bool
    after: Optional[LoudnessMeasurement] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input": self.input_asset.asset_id,
            "output": self.output_asset.asset_id,
            "level": self.target.level.value,
            "target_lufs": self.target.lufs,
            "before": self.before.to_dict(),
            "after": self.after.to_dict() if self.after else None,
            "skipped": self.skipped,
        }


ChunkInput = Union[AudioAsset, Path, str]


@dataclass
class ScriptSection:
    """A structural part of the script whose text was rendered to raw speech chunks upstream."""

    type: SectionType
    title: Optional[str] = None
    chunks: Sequence[ChunkInput] = field(default_factory=list)


@dataclass(frozen=True)
class MusicPresent:
    key: str
    asset: AudioAsset


@dataclass(frozen=True)
class MusicAbsent:
    key: str
    reason: str


MusicLookup = Union[MusicPresent, MusicAbsent]


@dataclass(frozen=True)
class PlannedSection:
    type: SectionType
    title: Optional[str]
    asset: AudioAsset


@dataclass
class AssemblyPlan:
    sections: List[PlannedSection]
    intro: MusicLookup
    outro: MusicLookup
    # transitions[i] plays before sections[i + 1]
    transitions: List[MusicLookup]
    fade_in_seconds: float = 2.0
    fade_out_seconds: float = 3.0
    transition_seconds: float = 1.0
    transition_mode: str = "cut"

    @property
    def music_lookups(self) -> List[MusicLookup]:
        return [self.intro, *self.transitions, self.outro]


@dataclass(frozen=True)
class SectionTiming:
    index: int
    type: SectionType
    title: Optional[str]
    start_seconds: float
    duration_seconds: float

    @property
    def end_seconds(self) -> float:
        return self.start_seconds + self.duration_seconds

    def to_chapter(self) -> Dict[str, Any]:
        chapter: Dict[str, Any] = {
            "type": self.type.value,
            "startTimeSeconds": round(self.start_seconds, 3),
            "durationSeconds": round(self.duration_seconds, 3),
        }
        if self.title:
            chapter["title"] = self.title
        return chapter


@dataclass
class AssembledEpisode:
    audio: AudioAsset
    duration_seconds: float
    file_size_bytes: int
    sections: List[SectionTiming]
    music_segments_used: int
    run_id: str
    normalization: List[NormalizationResult] = field(default_factory=list)

    @property
    def path(self) -> Path:
        return self.audio.path

    def read_bytes(self) -> bytes:
        return self.audio.path.read_bytes()

    def to_chapters(self) -> List[Dict[str, Any]]:
        return [s.to_chapter() for s in self.sections]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "audio_path": str(self.audio.path),
            "duration_seconds": self.duration_seconds,
            "file_size_bytes": self.file_size_bytes,
            "sections": self.to_chapters(),
            "music_segments_used": self.music_segments_used,
            "normalization": [r.to_dict() for r in self.normalization],
        }


__all__ = [
    "SectionType",
    "NormalizationLevel",
    "LoudnessMeasurement",
    "AudioAsset",
    "NormalizationTarget",
    "NormalizationResult",
    "ChunkInput",
    "ScriptSection",
    "MusicPresent",
    "MusicAbsent",
    "MusicLookup",
    "PlannedSection",
    "AssemblyPlan",
    "SectionTiming",
    "AssembledEpisode",
]
