"""Episode assembly pipeline.

Runs the three normalization levels in strict sequence::

    chunks --(normalize @ target+2)--> concat per section --(normalize @ target+1)-->
    assemble with music --(normalize @ target, forced)--> episode

Chunk work inside a level runs on a bounded thread pool; everything else is
sequential. Every scratch file lives in a run-scoped manifest that is released
whether the run ends in ``DONE`` or ``FAILED``.
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar, Union

from briefcast.core.config import AudioSettings
from .assembler import SectionAssembler
from .concatenator import Concatenator
from .errors import AssemblyError, AudioPipelineError, SectionBoundaryError
from .ffmpeg import AudioTool, CancelToken, FfmpegTool
from .measurer import LoudnessMeasurer
from .models import (
    AssembledEpisode,
    AudioAsset,
    ChunkInput,
    LoudnessMeasurement,
    NormalizationLevel,
    NormalizationResult,
    PlannedSection,
    ScriptSection,
    SectionType,
)
from .music import MusicLibrary, MusicStore
from .normalizer import Normalizer, target_for
from .sections import boundaries_for, section_ranges
from .temp_assets import TemporaryAssetManager

log = logging.getLogger(__name__)

T = TypeVar("T")


class PipelineState(str, Enum):
    IDLE = "idle"
    MEASURING_CHUNKS = "measuring_chunks"
    NORMALIZING_CHUNKS = "normalizing_chunks"
    CONCATENATING_SECTIONS = "concatenating_sections"
    NORMALIZING_SECTIONS = "normalizing_sections"
    ASSEMBLING_EPISODE = "assembling_episode"
    NORMALIZING_EPISODE = "normalizing_episode"
    DONE = "done"
    FAILED = "failed"


WORKING_STATES = (
    PipelineState.MEASURING_CHUNKS,
    PipelineState.NORMALIZING_CHUNKS,
    PipelineState.CONCATENATING_SECTIONS,
    PipelineState.NORMALIZING_SECTIONS,
    PipelineState.ASSEMBLING_EPISODE,
    PipelineState.NORMALIZING_EPISODE,
)


def new_run_id() -> str:
    return f"{datetime.now(timezone.utc):%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"


class EpisodePipeline:
    """One episode assembly run. Instances are single-use."""

    def __init__(
        self,
        settings: AudioSettings,
        tool: Optional[AudioTool] = None,
        music_store: Optional[MusicStore] = None,
        run_id: Optional[str] = None,
        on_state_change: Optional[Callable[[PipelineState], None]] = None,
    ) -> None:
        self.settings = settings
        self.tool = tool or FfmpegTool(settings)
        self.music_store = music_store
        self.run_id = run_id or new_run_id()
        self.on_state_change = on_state_change

        self._cancel = CancelToken()
        self._lock = threading.Lock()
        self._state = PipelineState.IDLE
        self._history: List[PipelineState] = [PipelineState.IDLE]
        self._started = False

        self.measurer = LoudnessMeasurer(self.tool, target_for(settings, NormalizationLevel.EPISODE))
        self.normalizer = Normalizer(self.tool, settings, self.measurer)

    # --- observation / control ---
    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    @property
    def history(self) -> List[PipelineState]:
        with self._lock:
            return list(self._history)

    def cancel(self) -> None:
        """Abort the run from any thread; in-flight tool processes are killed."""
        log.info(f"[pipeline] run {self.run_id} cancellation requested")
        self._cancel.cancel()

    def _enter(self, state: PipelineState) -> None:
        if state is not PipelineState.DONE:
            self._cancel.raise_if_cancelled(state.value)
        with self._lock:
            self._state = state
            self._history.append(state)
        log.info(f"[pipeline] run {self.run_id} -> {state.value}")
        if self.on_state_change is not None:
            self.on_state_change(state)

    # --- entry points ---
    def run(self, sections: Sequence[ScriptSection], output_path: Union[str, Path]) -> AssembledEpisode:
        """Assemble an episode from sections that each carry their own chunks."""
        kept = [s for s in sections if s.chunks]
        if len(kept) != len(sections):
            log.warning(f"[pipeline] run {self.run_id}: dropped {len(sections) - len(kept)} section(s) without chunks")
        if not kept:
            raise AssemblyError("no section has any audio chunks")
        chunks: List[ChunkInput] = [c for s in kept for c in s.chunks]
        boundaries = boundaries_for([len(s.chunks) for s in kept])
        return self.run_chunks(chunks, output_path, section_boundaries=boundaries, sections=kept)

    def run_chunks(
        self,
        chunks: Sequence[ChunkInput],
        output_path: Union[str, Path],
        section_boundaries: Sequence[int] = (),
        sections: Optional[Sequence[ScriptSection]] = None,
    ) -> AssembledEpisode:
        """Assemble an episode from a flat chunk list cut into sections at ``section_boundaries``.

        ``sections`` optionally supplies type/title metadata, one entry per
        section implied by the boundaries (chunks on these entries are ignored).
        """
        ranges = section_ranges(len(chunks), section_boundaries)
        if sections is None:
            meta: List[Tuple[SectionType, Optional[str]]] = [(SectionType.TOPIC, None)] * len(ranges)
        else:
            if len(sections) != len(ranges):
                raise SectionBoundaryError(
                    f"{len(ranges)} sections implied by boundaries but {len(sections)} section entries given"
                )
            meta = [(s.type, s.title) for s in sections]

        keep = [i for i, (start, end) in enumerate(ranges) if end > start]
        if len(keep) != len(ranges):
            log.warning(
                f"[pipeline] run {self.run_id}: dropped {len(ranges) - len(keep)} empty section(s) "
                f"from boundaries {list(section_boundaries)}"
            )
        return self._execute(
            list(chunks),
            [ranges[i] for i in keep],
            [meta[i] for i in keep],
            Path(output_path),
        )

    # --- the run ---
    def _execute(
        self,
        chunks: List[ChunkInput],
        ranges: List[Tuple[int, int]],
        meta: List[Tuple[SectionType, Optional[str]]],
        output_path: Path,
    ) -> AssembledEpisode:
        with self._lock:
            if self._started:
                raise AssemblyError(f"pipeline for run {self.run_id} was already used; create a new one per run")
            self._started = True

        s = self.settings
        scratch: Optional[TemporaryAssetManager] = None
        published: Optional[Path] = None
        backup: Optional[Path] = None
        done = False
        results: List[NormalizationResult] = []
        log.info(
            f"[pipeline] run {self.run_id}: {len(chunks)} chunks in {len(ranges)} sections -> {output_path}"
        )
        try:
            scratch = TemporaryAssetManager(s.SCRATCH_ROOT, self.run_id)
            self.tool.check_available()
            concatenator = Concatenator(self.tool, scratch)
            music = MusicLibrary(self.music_store, self.tool, scratch, s) if self.music_store is not None else None
            assembler = SectionAssembler(self.tool, s, scratch, self.normalizer, concatenator, music)
            cancel = self._cancel

            # level 1: chunks
            self._enter(PipelineState.MEASURING_CHUNKS)
            chunk_target = target_for(s, NormalizationLevel.CHUNK)
            if not s.KEEP_INPUT_CHUNKS:
                for c in chunks:
                    scratch.adopt(c.path if isinstance(c, AudioAsset) else Path(c), purpose="input-chunk")

            def measure_one(idx: int, chunk: ChunkInput) -> Tuple[AudioAsset, LoudnessMeasurement]:
                asset = chunk if isinstance(chunk, AudioAsset) else self.tool.probe(Path(chunk), cancel=cancel)
                return asset, self.measurer.measure(asset, chunk_target, cancel=cancel)

            measured = self._map_chunks(measure_one, chunks)

            self._enter(PipelineState.NORMALIZING_CHUNKS)

            def normalize_one(idx: int, item: Tuple[AudioAsset, LoudnessMeasurement]) -> NormalizationResult:
                asset, m = item
                return self.normalizer.normalize(
                    asset,
                    chunk_target,
                    scratch.allocate(f"chunk-{idx:04d}"),
                    measured=m,
                    conform=(asset.sample_rate, asset.channels),
                    cancel=cancel,
                )

            chunk_results = self._map_chunks(normalize_one, measured)
            results.extend(chunk_results)
            skipped = sum(1 for r in chunk_results if r.skipped)
            log.info(f"[pipeline] chunks normalized: {len(chunk_results) - skipped} encoded, {skipped} skipped")

            # level 2: sections
            self._enter(PipelineState.CONCATENATING_SECTIONS)
            raw_sections = [
                concatenator.concatenate(
                    [r.output_asset for r in chunk_results[start:end]],
                    scratch.allocate(f"section-{k}-raw"),
                    cancel=cancel,
                )
                for k, (start, end) in enumerate(ranges)
            ]

            self._enter(PipelineState.NORMALIZING_SECTIONS)
            section_target = target_for(s, NormalizationLevel.SECTION)
            section_results = [
                self.normalizer.normalize(raw, section_target, scratch.allocate(f"section-{k}"), cancel=cancel)
                for k, raw in enumerate(raw_sections)
            ]
            results.extend(section_results)

            # level 3: episode
            self._enter(PipelineState.ASSEMBLING_EPISODE)
            planned = [
                PlannedSection(type=t, title=title, asset=r.output_asset)
                for (t, title), r in zip(meta, section_results)
            ]
            plan = assembler.plan(planned, cancel=cancel)
            raw_episode = assembler.assemble(plan, scratch.allocate("episode-raw"), cancel=cancel)
            results.extend(raw_episode.normalization)

            self._enter(PipelineState.NORMALIZING_EPISODE)
            final_tmp = scratch.allocate("episode", suffix=output_path.suffix or ".mp3")
            final = self.normalizer.normalize(
                raw_episode.audio,
                target_for(s, NormalizationLevel.EPISODE),
                final_tmp,
                force=True,
                verify=True,
                cancel=cancel,
            )
            results.append(final)
            episode_audio = final.output_asset
            if s.EPISODE_FADE_OUT and s.FADE_OUT_SECONDS > 0:
                episode_audio = self._fade_tail(
                    episode_audio, scratch.allocate("episode-faded", suffix=output_path.suffix or ".mp3"), cancel
                )
            cancel.raise_if_cancelled("episode publication")
            backup = self._set_aside(output_path)
            audio = self._publish(episode_audio, output_path)
            published = output_path

            episode = AssembledEpisode(
                audio=audio,
                duration_seconds=audio.duration_seconds,
                file_size_bytes=output_path.stat().st_size,
                sections=raw_episode.sections,
                music_segments_used=raw_episode.music_segments_used,
                run_id=self.run_id,
                normalization=results,
            )
            self._enter(PipelineState.DONE)
            done = True
            log.info(
                f"[pipeline] run {self.run_id} done: {episode.duration_seconds:.2f}s, "
                f"{episode.file_size_bytes} bytes, {len(episode.sections)} sections, "
                f"{episode.music_segments_used} music segments"
            )
            return episode
        except BaseException as e:
            if published is not None:
                published.unlink(missing_ok=True)
            if backup is not None:
                self._restore(backup, output_path)
            self._fail(e)
            raise
        finally:
            if done and backup is not None:
                try:
                    backup.unlink(missing_ok=True)
                except OSError as e:
                    log.warning(f"[pipeline] could not remove previous episode copy {backup}: {e}")
            if scratch is not None:
                # input chunks are only consumed by a finished run
                leftovers = scratch.release_all(keep_adopted=not done)
                if leftovers:
                    log.warning(f"[pipeline] run {self.run_id}: {len(leftovers)} scratch file(s) could not be deleted")

    def _map_chunks(self, fn: Callable[[int, T], object], items: Sequence[T]) -> list:
        """Run ``fn`` over ``items`` on the worker pool; results keep input order.

        The first failure cancels the run token so sibling tool processes are
        killed, then propagates.
        """
        out: list = [None] * len(items)
        workers = max(1, min(self.settings.MAX_WORKERS, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"briefcast-{self.run_id}") as pool:
            futures = {pool.submit(fn, idx, item): idx for idx, item in enumerate(items)}
            try:
                for fut in as_completed(futures):
                    out[futures[fut]] = fut.result()
            except BaseException:
                self._cancel.cancel()
                for fut in futures:
                    fut.cancel()
                raise
        return out

    def _fade_tail(self, asset: AudioAsset, dst: Path, cancel: CancelToken) -> AudioAsset:
        fade_out = min(self.settings.FADE_OUT_SECONDS, asset.duration_seconds)
        self.tool.fade(asset.path, dst, duration_seconds=asset.duration_seconds, fade_out=fade_out, cancel=cancel)
        faded = self.tool.probe(dst, cancel=cancel)
        log.info(f"[pipeline] faded out last {fade_out:.1f}s of {asset.asset_id}")
        # a tail fade leaves integrated loudness within measurement noise
        return faded.with_loudness(asset.loudness) if asset.loudness is not None else faded

    def _set_aside(self, output_path: Path) -> Optional[Path]:
        """Move an existing episode out of the way so a failed run can put it back."""
        if not output_path.exists():
            return None
        backup = output_path.with_name(f".{output_path.name}.{self.run_id}.previous")
        try:
            output_path.replace(backup)
        except OSError as e:
            raise AssemblyError(f"could not set aside existing {output_path}: {e}", assets=[output_path.name]) from e
        return backup

    def _restore(self, backup: Path, output_path: Path) -> None:
        try:
            backup.replace(output_path)
        except OSError as e:
            log.error(f"[pipeline] could not restore previous episode from {backup}: {e}")

    def _publish(self, asset: AudioAsset, output_path: Path) -> AudioAsset:
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(asset.path), str(output_path))
        except OSError as e:
            raise AssemblyError(f"could not write episode to {output_path}: {e}", assets=[asset.asset_id]) from e
        return asset.moved_to(output_path)

    def _fail(self, error: BaseException) -> None:
        with self._lock:
            stage = self._state
            self._state = PipelineState.FAILED
            self._history.append(PipelineState.FAILED)
        if isinstance(error, AudioPipelineError) and not error.stage:
            error.stage = stage.value
        log.error(f"[pipeline] run {self.run_id} failed during {stage.value}: {error}")
        if self.on_state_change is not None:
            try:
                self.on_state_change(PipelineState.FAILED)
            except Exception as listener_error:
                log.warning(f"[pipeline] state listener raised on failure: {listener_error}")


__all__ = ["EpisodePipeline", "PipelineState", "WORKING_STATES", "new_run_id"]
