"""Episode assembly: music integration, ordering and the section timing map.

Order of the raw episode::

    [intro (fade-in)] section0 ([transition] section_i)* [outro (fade-out)]

Music segments advance the running clock but never appear in the timing map.
With ``TRANSITION_MODE="duck"`` the transition bed is mixed under the start of
the following section instead of being played between sections, so it adds no
time at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from briefcast.core.config import AudioSettings
from .concatenator import Concatenator
from .errors import AssemblyError, AudioPipelineError, PipelineCancelled
from .ffmpeg import AudioTool, CancelToken
from .models import (
    AssemblyPlan,
    AudioAsset,
    MusicAbsent,
    MusicLookup,
    MusicPresent,
    NormalizationLevel,
    NormalizationResult,
    PlannedSection,
    SectionTiming,
)
from .music import MusicLibrary, absent
from .normalizer import Normalizer, target_for
from .temp_assets import TemporaryAssetManager

log = logging.getLogger(__name__)


@dataclass
class RawEpisode:
    audio: AudioAsset
    sections: List[SectionTiming]
    music_segments_used: int
    normalization: List[NormalizationResult] = field(default_factory=list)


class SectionAssembler:
    def __init__(
        self,
        tool: AudioTool,
        settings: AudioSettings,
        scratch: TemporaryAssetManager,
        normalizer: Normalizer,
        concatenator: Concatenator,
        music: Optional[MusicLibrary] = None,
    ) -> None:
        self.tool = tool
        self.settings = settings
        self.scratch = scratch
        self.normalizer = normalizer
        self.concatenator = concatenator
        self.music = music
        # (key, role) -> prepared segment, so a shared transition is encoded once
        self._prepared: Dict[Tuple[str, str], Optional[AudioAsset]] = {}
        self._music_results: List[NormalizationResult] = []

    # --- planning ---
    def plan(self, sections: Sequence[PlannedSection], cancel: Optional[CancelToken] = None) -> AssemblyPlan:
        if not sections:
            raise AssemblyError("cannot assemble an episode without sections")
        s = self.settings
        intro = self._lookup("intro", None, s.INCLUDE_INTRO_MUSIC, cancel)
        outro = self._lookup("outro", None, s.INCLUDE_OUTRO_MUSIC, cancel)
        transitions = [
            self._lookup("transition", i, s.INCLUDE_TRANSITIONS, cancel) for i in range(1, len(sections))
        ]
        plan = AssemblyPlan(
            sections=list(sections),
            intro=intro,
            outro=outro,
            transitions=transitions,
            fade_in_seconds=s.FADE_IN_SECONDS,
            fade_out_seconds=s.FADE_OUT_SECONDS,
            transition_seconds=s.TRANSITION_SECONDS,
            transition_mode=s.TRANSITION_MODE,
        )
        present = sum(1 for m in plan.music_lookups if isinstance(m, MusicPresent))
        log.info(
            f"[assemble] plan: {len(plan.sections)} sections, {present}/{len(plan.music_lookups)} music segments available, "
            f"transitions={plan.transition_mode}"
        )
        return plan

    def _lookup(self, kind: str, index: Optional[int], wanted: bool, cancel: Optional[CancelToken]) -> MusicLookup:
        if not self.settings.MUSIC_ENABLED or self.music is None:
            return absent(kind, "music disabled", self.settings)
        if not wanted:
            return absent(kind, f"{kind} music not requested", self.settings)
        return self.music.lookup(kind, index, cancel=cancel)

    # --- assembly ---
    def assemble(
        self,
        plan: AssemblyPlan,
        output_path: Path,
        cancel: Optional[CancelToken] = None,
    ) -> RawEpisode:
        """Lay out music and sections in order and join them into one raw episode."""
        speech = plan.sections[0].asset
        conform = (speech.sample_rate, speech.channels)

        parts: List[AudioAsset] = []
        timings: List[SectionTiming] = []
        music_used = 0
        elapsed = 0.0

        intro = self._prepare(plan.intro, "intro", conform, plan, cancel)
        if intro is not None:
            parts.append(intro)
            elapsed += intro.duration_seconds
            music_used += 1

        for idx, section in enumerate(plan.sections):
            section_asset = section.asset
            if idx > 0:
                lookup = plan.transitions[idx - 1]
                if plan.transition_mode == "duck":
                    bed = self._prepare(lookup, "duck", conform, plan, cancel)
                    if bed is not None:
                        section_asset = self._duck(section_asset, bed, conform, cancel)
                        music_used += 1
                else:
                    sting = self._prepare(lookup, "transition", conform, plan, cancel)
                    if sting is not None:
                        parts.append(sting)
                        elapsed += sting.duration_seconds
                        music_used += 1

            timings.append(
                SectionTiming(
                    index=idx,
                    type=section.type,
                    title=section.title,
                    start_seconds=elapsed,
                    duration_seconds=section_asset.duration_seconds,
                )
            )
            parts.append(section_asset)
            elapsed += section_asset.duration_seconds

        outro = self._prepare(plan.outro, "outro", conform, plan, cancel)
        if outro is not None:
            parts.append(outro)
            elapsed += outro.duration_seconds
            music_used += 1

        log.info(
            f"[assemble] {len(timings)} sections + {music_used} music segments, "
            f"expected duration {elapsed:.2f}s"
        )
        raw = self.concatenator.concatenate(parts, output_path, cancel=cancel)
        return RawEpisode(
            audio=raw,
            sections=timings,
            music_segments_used=music_used,
            normalization=list(self._music_results),
        )

    def _prepare(
        self,
        lookup: MusicLookup,
        role: str,
        conform: Tuple[int, int],
        plan: AssemblyPlan,
        cancel: Optional[CancelToken],
    ) -> Optional[AudioAsset]:
        """Normalize, conform and shape one music segment; ``None`` means skip it."""
        if isinstance(lookup, MusicAbsent):
            log.debug(f"[assemble] no {role} music: {lookup.reason}")
            return None

        cache_key = (lookup.key, role)
        if cache_key in self._prepared:
            return self._prepared[cache_key]

        try:
            prepared = self._shape(lookup, role, conform, plan, cancel)
        except PipelineCancelled:
            raise
        except AudioPipelineError as e:
            log.warning(f"[assemble] skipping {role} music {lookup.key}: {e}")
            prepared = None
        self._prepared[cache_key] = prepared
        return prepared

    def _shape(
        self,
        music: MusicPresent,
        role: str,
        conform: Tuple[int, int],
        plan: AssemblyPlan,
        cancel: Optional[CancelToken],
    ) -> AudioAsset:
        normalized_path = self.scratch.allocate(f"music-{role}-normalized")
        result = self.normalizer.normalize(
            music.asset,
            target_for(self.settings, NormalizationLevel.MUSIC),
            normalized_path,
            force=True,
            conform=conform,
            cancel=cancel,
        )
        self._music_results.append(result)
        normalized = result.output_asset

        if role == "intro" or role == "outro":
            fade_in = plan.fade_in_seconds if role == "intro" else 0.0
            fade_out = plan.fade_out_seconds if role == "outro" else 0.0
            if fade_in <= 0 and fade_out <= 0:
                return normalized
            shaped_path = self.scratch.allocate(f"music-{role}-faded")
            self.tool.fade(
                normalized.path,
                shaped_path,
                duration_seconds=normalized.duration_seconds,
                fade_in=fade_in,
                fade_out=fade_out,
                cancel=cancel,
            )
            return self.tool.probe(shaped_path, cancel=cancel)

        if role == "transition":
            if normalized.duration_seconds <= plan.transition_seconds:
                return normalized
            trimmed_path = self.scratch.allocate("music-transition-trimmed")
            self.tool.trim(normalized.path, trimmed_path, plan.transition_seconds, cancel=cancel)
            return self.tool.probe(trimmed_path, cancel=cancel)

        # duck: the bed is used whole; amix keeps the voice's length
        return normalized

    def _duck(
        self,
        voice: AudioAsset,
        bed: AudioAsset,
        conform: Tuple[int, int],
        cancel: Optional[CancelToken],
    ) -> AudioAsset:
        mixed_path = self.scratch.allocate("section-ducked")
        self.tool.mix(
            voice.path,
            bed.path,
            mixed_path,
            bed_volume=self.settings.DUCK_MUSIC_VOLUME,
            sample_rate=conform[0],
            channels=conform[1],
            cancel=cancel,
        )
        mixed = self.tool.probe(mixed_path, cancel=cancel)
        log.debug(f"[assemble] ducked {bed.asset_id} under {voice.asset_id}")
        return mixed


__all__ = ["SectionAssembler", "RawEpisode"]
