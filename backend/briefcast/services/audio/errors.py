"""Error taxonomy for the episode audio pipeline.

Hard errors abort the run; the orchestrator stamps them with the stage that
failed before re-raising. ``MusicUnavailable`` is the only soft error and is
absorbed by the assembler.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple


class AudioPipelineError(RuntimeError):
    """Base class; carries the failing stage and the asset identifiers involved."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        assets: Iterable[str] = (),
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.assets: Tuple[str, ...] = tuple(str(a) for a in assets)

    def __str__(self) -> str:
        parts = [self.message]
        if self.stage:
            parts.append(f"stage={self.stage}")
        if self.assets:
            parts.append(f"assets={', '.join(self.assets)}")
        return " | ".join(parts)


class ToolUnavailable(AudioPipelineError):
    """The audio-processing binary is missing or cannot be executed."""


class ToolTimeout(AudioPipelineError):
    """An external tool invocation exceeded its timeout (treated like a crash)."""


class MeasurementError(AudioPipelineError):
    """The loudness diagnostic payload could not be located or parsed."""


class NormalizationError(AudioPipelineError):
    pass


class ConcatenationError(AudioPipelineError):
    pass


class AssemblyError(AudioPipelineError):
    pass


class ProbeError(AssemblyError):
    """Format/duration probing failed or the file carries no audio stream."""


class MusicUnavailable(AudioPipelineError):
    """A requested music asset is absent. Soft: the segment is skipped."""


class PipelineCancelled(AudioPipelineError):
    pass


class ScratchError(AudioPipelineError):
    """Scratch directory misuse (run id collision, foreign run id, path escape)."""


class SectionBoundaryError(AudioPipelineError, ValueError):
    """Section cut indices are not strictly increasing or fall outside [0, N]."""


__all__ = [
    "AudioPipelineError",
    "ToolUnavailable",
    "ToolTimeout",
    "MeasurementError",
    "NormalizationError",
    "ConcatenationError",
    "AssemblyError",
    "ProbeError",
    "MusicUnavailable",
    "PipelineCancelled",
    "ScratchError",
    "SectionBoundaryError",
]
