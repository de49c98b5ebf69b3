"""ffmpeg/ffprobe adapter.

This is the only module that knows ffmpeg's command-line syntax or the text
layout of its diagnostics. The rest of the pipeline talks to the ``AudioTool``
protocol and receives structured values.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple, Type

from briefcast.core.config import AudioSettings
from .errors import (
    AudioPipelineError,
    ConcatenationError,
    MeasurementError,
    NormalizationError,
    AssemblyError,
    PipelineCancelled,
    ProbeError,
    ToolTimeout,
    ToolUnavailable,
)
from .models import AudioAsset, LoudnessMeasurement, NormalizationTarget

log = logging.getLogger(__name__)

_POLL_SECONDS = 0.25
_STDERR_EXCERPT = 500

# loudnorm print_format=json keys -> LoudnessMeasurement fields
LOUDNORM_KEYS = {
    "input_i": "integrated_lufs",
    "input_tp": "true_peak_dbtp",
    "input_lra": "loudness_range_lu",
    "input_thresh": "threshold_lufs",
    "target_offset": "target_offset_lu",
}
_LOUDNORM_BLOCK = re.compile(r"\{[^{}]*\"input_i\"[^{}]*\}", re.DOTALL)


class CancelToken:
    """Run-scoped cancellation signal shared by every subprocess of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise PipelineCancelled(f"{what} cancelled")


class AudioTool(Protocol):
    def check_available(self) -> None: ...

    def probe(self, path: Path, cancel: Optional[CancelToken] = None) -> AudioAsset: ...

    def measure_loudness(
        self, path: Path, target: NormalizationTarget, cancel: Optional[CancelToken] = None
    ) -> LoudnessMeasurement: ...

    def apply_loudnorm(
        self,
        src: Path,
        dst: Path,
        target: NormalizationTarget,
        measured: Optional[LoudnessMeasurement] = None,
        *,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None: ...

    def concat_copy(
        self, inputs: Sequence[Path], dst: Path, list_file: Path, cancel: Optional[CancelToken] = None
    ) -> None: ...

    def fade(
        self,
        src: Path,
        dst: Path,
        *,
        duration_seconds: float,
        fade_in: float = 0.0,
        fade_out: float = 0.0,
        cancel: Optional[CancelToken] = None,
    ) -> None: ...

    def trim(self, src: Path, dst: Path, seconds: float, cancel: Optional[CancelToken] = None) -> None: ...

    def mix(
        self,
        voice: Path,
        bed: Path,
        dst: Path,
        *,
        bed_volume: float,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None: ...


def parse_loudnorm_json(text: str, *, asset: str = "") -> LoudnessMeasurement:
    """Extract the loudnorm analysis block from ffmpeg diagnostics.

    Raises:
        MeasurementError: if the block is missing, malformed, or lacks a key.
    """
    match = _LOUDNORM_BLOCK.search(text or "")
    if match is None:
        raise MeasurementError("No loudnorm JSON found in ffmpeg output", assets=[asset] if asset else ())
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MeasurementError(f"Failed to parse loudnorm JSON: {e}", assets=[asset] if asset else ()) from e

    values = {}
    for key, field_name in LOUDNORM_KEYS.items():
        if key not in data:
            raise MeasurementError(
                f"Missing required key in loudnorm output: {key}", assets=[asset] if asset else ()
            )
        try:
            values[field_name] = float(str(data[key]).strip())
        except (TypeError, ValueError) as e:
            raise MeasurementError(
                f"Invalid value for {key}: {data[key]!r}", assets=[asset] if asset else ()
            ) from e
    return LoudnessMeasurement(**values)


def parse_probe_json(text: str, path: Path) -> AudioAsset:
    try:
        probe = json.loads(text or "{}")
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe returned invalid JSON: {e}", assets=[path.name]) from e

    streams = probe.get("streams") or []
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if audio is None:
        raise ProbeError("No audio stream found", assets=[path.name])

    fmt = probe.get("format") or {}
    try:
        duration = float(fmt.get("duration") or audio.get("duration") or 0.0)
        sample_rate = int(audio.get("sample_rate") or 0)
        channels = int(audio.get("channels") or 0)
    except (TypeError, ValueError) as e:
        raise ProbeError(f"Unreadable stream parameters: {e}", assets=[path.name]) from e
    if sample_rate <= 0 or channels <= 0:
        raise ProbeError("Stream reports no sample rate/channel layout", assets=[path.name])

    bit_rate = fmt.get("bit_rate") or audio.get("bit_rate")
    return AudioAsset(
        path=path,
        duration_seconds=duration,
        sample_rate=sample_rate,
        channels=channels,
        codec=str(audio.get("codec_name") or "unknown"),
        bitrate=int(bit_rate) if bit_rate and str(bit_rate).isdigit() else None,
    )


# encoder name -> codec_name ffprobe reports for its output
ENCODER_CODEC_NAMES = {
    "libmp3lame": "mp3",
    "aac": "aac",
    "libfdk_aac": "aac",
    "libopus": "opus",
    "libvorbis": "vorbis",
    "flac": "flac",
    "pcm_s16le": "pcm_s16le",
}


def codec_name_for(encoder: str) -> str:
    return ENCODER_CODEC_NAMES.get(encoder, encoder)


def _escape_concat_path(path: Path) -> str:
    return str(path).replace("'", "'\\''")


def _fmt(value: float) -> str:
    return f"{value:.2f}"


class FfmpegTool:
    """``AudioTool`` backed by the ffmpeg/ffprobe binaries."""

    def __init__(self, settings: AudioSettings) -> None:
        self.settings = settings
        self._available = False
        self._lock = threading.Lock()

    # --- process plumbing ---
    def _run(
        self,
        cmd: List[str],
        *,
        error_cls: Type[AudioPipelineError],
        assets: Sequence[str] = (),
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Tuple[str, str]:
        timeout = timeout if timeout is not None else self.settings.TOOL_TIMEOUT_SECONDS
        if cancel is not None:
            cancel.raise_if_cancelled(Path(cmd[0]).name)
        log.debug(f"[ffmpeg] exec: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
            )
        except FileNotFoundError:
            raise ToolUnavailable(f"{cmd[0]} not found in PATH. Please install ffmpeg.", assets=assets) from None
        except PermissionError as e:
            raise ToolUnavailable(f"{cmd[0]} is not executable: {e}", assets=assets) from e

        deadline = time.monotonic() + timeout
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    self._kill(proc)
                    raise PipelineCancelled(f"{Path(cmd[0]).name} cancelled", assets=assets) from None
                if time.monotonic() >= deadline:
                    self._kill(proc)
                    raise ToolTimeout(
                        f"{Path(cmd[0]).name} timed out after {timeout:.0f}s", assets=assets
                    ) from None

        if proc.returncode != 0:
            excerpt = (stderr or "").strip()[-_STDERR_EXCERPT:]
            log.error(f"[ffmpeg] {Path(cmd[0]).name} exited {proc.returncode}: {excerpt}")
            raise error_cls(f"{Path(cmd[0]).name} failed with return code {proc.returncode}: {excerpt}", assets=assets)
        return stdout or "", stderr or ""

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            proc.kill()
            proc.communicate(timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning(f"[ffmpeg] could not reap pid={proc.pid}: {e}")

    def _encode_args(self, sample_rate: Optional[int], channels: Optional[int]) -> List[str]:
        args = ["-c:a", self.settings.OUTPUT_CODEC, "-b:a", self.settings.OUTPUT_BITRATE]
        if sample_rate:
            args += ["-ar", str(sample_rate)]
        if channels:
            args += ["-ac", str(channels)]
        return args

    # --- AudioTool ---
    def check_available(self) -> None:
        with self._lock:
            if self._available:
                return
            for binary in (self.settings.FFMPEG_BIN, self.settings.FFPROBE_BIN):
                try:
                    self._run(
                        [binary, "-hide_banner", "-version"],
                        error_cls=ToolUnavailable,
                        timeout=self.settings.PROBE_TIMEOUT_SECONDS,
                    )
                except ToolTimeout as e:
                    raise ToolUnavailable(f"{binary} did not answer -version: {e.message}") from e
            self._available = True
            log.info(f"[ffmpeg] using {self.settings.FFMPEG_BIN} / {self.settings.FFPROBE_BIN}")

    def probe(self, path: Path, cancel: Optional[CancelToken] = None) -> AudioAsset:
        path = Path(path)
        stdout, _ = self._run(
            [
                self.settings.FFPROBE_BIN,
                "-v", "error",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                str(path),
            ],
            error_cls=ProbeError,
            assets=[path.name],
            timeout=self.settings.PROBE_TIMEOUT_SECONDS,
            cancel=cancel,
        )
        return parse_probe_json(stdout, path)

    def measure_loudness(
        self, path: Path, target: NormalizationTarget, cancel: Optional[CancelToken] = None
    ) -> LoudnessMeasurement:
        path = Path(path)
        stdout, stderr = self._run(
            [
                self.settings.FFMPEG_BIN,
                "-hide_banner",
                "-nostats",
                "-i", str(path),
                "-af", (
                    f"loudnorm=I={_fmt(target.lufs)}:TP={_fmt(target.max_true_peak_dbtp)}:"
                    f"LRA={_fmt(target.loudness_range_lu)}:print_format=json"
                ),
                "-f", "null",
                "-",
            ],
            error_cls=MeasurementError,
            assets=[path.name],
            cancel=cancel,
        )
        # loudnorm prints its report on stderr; some builds route it to stdout
        return parse_loudnorm_json(stderr + "\n" + stdout, asset=path.name)

    def apply_loudnorm(
        self,
        src: Path,
        dst: Path,
        target: NormalizationTarget,
        measured: Optional[LoudnessMeasurement] = None,
        *,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        loudnorm = (
            f"loudnorm=I={_fmt(target.lufs)}:TP={_fmt(target.max_true_peak_dbtp)}:"
            f"LRA={_fmt(target.loudness_range_lu)}"
        )
        if measured is not None:
            loudnorm += (
                f":measured_I={measured.integrated_lufs}:measured_TP={measured.true_peak_dbtp}:"
                f"measured_LRA={measured.loudness_range_lu}:measured_thresh={measured.threshold_lufs}:"
                f"offset={measured.target_offset_lu}:linear=true"
            )
        self._run(
            [
                self.settings.FFMPEG_BIN,
                "-hide_banner",
                "-nostats",
                "-y",
                "-i", str(src),
                "-af", loudnorm + ":print_format=summary",
                *self._encode_args(sample_rate, channels),
                str(dst),
            ],
            error_cls=NormalizationError,
            assets=[Path(src).name],
            cancel=cancel,
        )

    def concat_copy(
        self, inputs: Sequence[Path], dst: Path, list_file: Path, cancel: Optional[CancelToken] = None
    ) -> None:
        with open(list_file, "w", encoding="utf-8") as f:
            for p in inputs:
                f.write(f"file '{_escape_concat_path(Path(p).resolve())}'\n")
        self._run(
            [
                self.settings.FFMPEG_BIN,
                "-hide_banner",
                "-nostats",
                "-y",
                "-f", "concat",
                "-safe", "0",
                "-i", str(list_file),
                "-c", "copy",
                str(dst),
            ],
            error_cls=ConcatenationError,
            assets=[Path(p).name for p in inputs],
            cancel=cancel,
        )

    def fade(
        self,
        src: Path,
        dst: Path,
        *,
        duration_seconds: float,
        fade_in: float = 0.0,
        fade_out: float = 0.0,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        filters = []
        if fade_in > 0:
            filters.append(f"afade=t=in:st=0:d={fade_in}")
        if fade_out > 0:
            start = max(0.0, duration_seconds - fade_out)
            filters.append(f"afade=t=out:st={start:.3f}:d={fade_out}")
        self._run(
            [
                self.settings.FFMPEG_BIN,
                "-hide_banner",
                "-nostats",
                "-y",
                "-i", str(src),
                "-af", ",".join(filters) if filters else "anull",
                *self._encode_args(None, None),
                str(dst),
            ],
            error_cls=AssemblyError,
            assets=[Path(src).name],
            cancel=cancel,
        )

    def trim(self, src: Path, dst: Path, seconds: float, cancel: Optional[CancelToken] = None) -> None:
        self._run(
            [
                self.settings.FFMPEG_BIN,
                "-hide_banner",
                "-nostats",
                "-y",
                "-i", str(src),
                "-t", f"{seconds:.3f}",
                "-c", "copy",
                str(dst),
            ],
            error_cls=AssemblyError,
            assets=[Path(src).name],
            cancel=cancel,
        )

    def mix(
        self,
        voice: Path,
        bed: Path,
        dst: Path,
        *,
        bed_volume: float,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self._run(
            [
                self.settings.FFMPEG_BIN,
                "-hide_banner",
                "-nostats",
                "-y",
                "-i", str(voice),
                "-i", str(bed),
                "-filter_complex",
                f"[1:a]volume={bed_volume}[bed];[0:a][bed]amix=inputs=2:duration=first:normalize=0",
                *self._encode_args(sample_rate, channels),
                str(dst),
            ],
            error_cls=AssemblyError,
            assets=[Path(voice).name, Path(bed).name],
            cancel=cancel,
        )


__all__ = [
    "AudioTool",
    "CancelToken",
    "FfmpegTool",
    "LOUDNORM_KEYS",
    "parse_loudnorm_json",
    "parse_probe_json",
    "codec_name_for",
]
