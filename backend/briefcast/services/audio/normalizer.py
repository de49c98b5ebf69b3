"""Program-loudness normalization using ffmpeg's loudnorm filter.

Two-pass by default: the analysis pass measures the input, and the correction
pass feeds those measurements back into loudnorm in linear mode. This is
materially more accurate than a single blind pass, which is still offered as
``quick_normalize`` for callers that trade accuracy for speed.

Assets already within ``SKIP_TOLERANCE_LU`` of the target are copied through
untouched (``skipped=True``) so repeated passes do not stack encode loss.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional, Tuple

from briefcast.core.config import AudioSettings
from .errors import NormalizationError
from .ffmpeg import AudioTool, CancelToken, codec_name_for
from .measurer import LoudnessMeasurer
from .models import (
    AudioAsset,
    LoudnessMeasurement,
    NormalizationLevel,
    NormalizationResult,
    NormalizationTarget,
)

log = logging.getLogger(__name__)

# Post-correction true peak may overshoot the ceiling by measurement noise
TRUE_PEAK_SLACK_DB = 0.1


def target_for(settings: AudioSettings, level: NormalizationLevel) -> NormalizationTarget:
    """Loudness target for one normalization level.

    Chunks sit 2 LU above the episode target and sections 1 LU above, so the
    drift introduced by later passes never has to push audio upward into the
    true-peak ceiling.
    """
    if level is NormalizationLevel.CHUNK:
        lufs = settings.TARGET_LUFS + settings.CHUNK_HEADROOM_LU
    elif level is NormalizationLevel.SECTION:
        lufs = settings.TARGET_LUFS + settings.SECTION_HEADROOM_LU
    elif level is NormalizationLevel.MUSIC:
        lufs = settings.music_target_lufs
    else:
        lufs = settings.TARGET_LUFS
    return NormalizationTarget(
        lufs=lufs,
        max_true_peak_dbtp=settings.MAX_TRUE_PEAK_DBTP,
        level=level,
        loudness_range_lu=settings.LOUDNESS_RANGE_LU,
    )


class Normalizer:
    def __init__(self, tool: AudioTool, settings: AudioSettings, measurer: Optional[LoudnessMeasurer] = None) -> None:
        self.tool = tool
        self.settings = settings
        self.measurer = measurer or LoudnessMeasurer(tool, target_for(settings, NormalizationLevel.EPISODE))
        self.output_codec = codec_name_for(settings.OUTPUT_CODEC)

    def within_tolerance(self, measured: LoudnessMeasurement, target: NormalizationTarget) -> bool:
        return abs(measured.integrated_lufs - target.lufs) < self.settings.SKIP_TOLERANCE_LU

    def normalize(
        self,
        asset: AudioAsset,
        target: NormalizationTarget,
        output_path: Path,
        *,
        measured: Optional[LoudnessMeasurement] = None,
        force: bool = False,
        conform: Optional[Tuple[int, int]] = None,
        verify: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> NormalizationResult:
        """Bring ``asset`` to ``target`` and write the result to ``output_path``.

        Args:
            measured: analysis pass result if the caller already measured the asset.
            force: always re-encode, even when within tolerance.
            conform: (sample_rate, channels) the output must have, in the configured
                output codec. Any difference from the input implies an encode.
            verify: measure the output and warn if the true-peak ceiling was missed.

        Raises:
            MeasurementError: analysis payload unreadable.
            NormalizationError: the correction pass failed.
        """
        output_path = Path(output_path)
        if measured is None:
            measured = self.measurer.measure(asset, target, cancel=cancel)

        needs_conform = conform is not None and (
            conform != (asset.sample_rate, asset.channels) or asset.codec != self.output_codec
        )

        if measured.is_silent and not needs_conform:
            log.warning(f"[normalize] {asset.asset_id} is digital silence; copying through unchanged")
            return self._copy_through(asset, target, output_path, measured)

        if not force and not needs_conform and self.within_tolerance(measured, target):
            log.info(
                f"[normalize] skip {asset.asset_id} ({target.level.value}): "
                f"measured {measured.integrated_lufs:.2f} LUFS vs target {target.lufs:.2f}"
            )
            return self._copy_through(asset, target, output_path, measured)

        sample_rate, channels = conform if conform is not None else (asset.sample_rate, asset.channels)
        log.info(
            f"[normalize] {asset.asset_id} ({target.level.value}): "
            f"{measured.integrated_lufs:.2f} -> {target.lufs:.2f} LUFS, TP<={target.max_true_peak_dbtp:.1f} dBTP"
        )
        self.tool.apply_loudnorm(
            asset.path,
            output_path,
            target,
            None if measured.is_silent else measured,
            sample_rate=sample_rate,
            channels=channels,
            cancel=cancel,
        )
        if not output_path.exists():
            raise NormalizationError("loudnorm produced no output file", assets=[asset.asset_id])
        out_asset = self.tool.probe(output_path, cancel=cancel)

        after: Optional[LoudnessMeasurement] = None
        if verify:
            after = self.measurer.measure(out_asset, target, cancel=cancel)
            out_asset = out_asset.with_loudness(after)
            if after.true_peak_dbtp > target.max_true_peak_dbtp + TRUE_PEAK_SLACK_DB:
                log.warning(
                    f"[normalize] {out_asset.asset_id} true peak {after.true_peak_dbtp:.2f} dBTP "
                    f"exceeds ceiling {target.max_true_peak_dbtp:.2f}"
                )
            log.info(
                f"[normalize] {out_asset.asset_id} verified: I={after.integrated_lufs:.2f} LUFS, "
                f"TP={after.true_peak_dbtp:.2f} dBTP"
            )

        return NormalizationResult(
            input_asset=asset.with_loudness(measured),
            output_asset=out_asset,
            target=target,
            before=measured,
            skipped=False,
            after=after,
        )

    def quick_normalize(
        self,
        asset: AudioAsset,
        target: NormalizationTarget,
        output_path: Path,
        cancel: Optional[CancelToken] = None,
    ) -> AudioAsset:
        """Single-pass loudnorm without prior analysis: faster, less accurate."""
        output_path = Path(output_path)
        log.info(f"[normalize] quick pass {asset.asset_id} -> {target.lufs:.2f} LUFS")
        self.tool.apply_loudnorm(
            asset.path,
            output_path,
            target,
            None,
            sample_rate=asset.sample_rate,
            channels=asset.channels,
            cancel=cancel,
        )
        return self.tool.probe(output_path, cancel=cancel)

    @staticmethod
    def _copy_through(
        asset: AudioAsset,
        target: NormalizationTarget,
        output_path: Path,
        measured: LoudnessMeasurement,
    ) -> NormalizationResult:
        try:
            shutil.copyfile(asset.path, output_path)
        except OSError as e:
            raise NormalizationError(f"copy-through failed: {e}", assets=[asset.asset_id]) from e
        measured_asset = asset.with_loudness(measured)
        return NormalizationResult(
            input_asset=measured_asset,
            output_asset=measured_asset.moved_to(output_path),
            target=target,
            before=measured,
            skipped=True,
        )


__all__ = ["Normalizer", "target_for", "TRUE_PEAK_SLACK_DB"]
