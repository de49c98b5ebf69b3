from __future__ import annotations

import logging
from typing import Optional

from .errors import MeasurementError
from .ffmpeg import AudioTool, CancelToken
from .models import AudioAsset, LoudnessMeasurement, NormalizationTarget

log = logging.getLogger(__name__)


class LoudnessMeasurer:
    """Runs the analysis pass and returns a structured measurement.

    Malformed input fails the same way every time, so a ``MeasurementError``
    is never retried here.
    """

    def __init__(self, tool: AudioTool, default_target: NormalizationTarget) -> None:
        self.tool = tool
        self.default_target = default_target

    def measure(
        self,
        asset: AudioAsset,
        target: Optional[NormalizationTarget] = None,
        cancel: Optional[CancelToken] = None,
    ) -> LoudnessMeasurement:
        target = target or self.default_target
        try:
            measured = self.tool.measure_loudness(asset.path, target, cancel=cancel)
        except MeasurementError as e:
            if not e.assets:
                e.assets = (asset.asset_id,)
            log.error(f"[measure] {asset.asset_id}: {e.message}")
            raise
        log.debug(
            f"[measure] {asset.asset_id}: I={measured.integrated_lufs:.2f} LUFS, "
            f"TP={measured.true_peak_dbtp:.2f} dBTP, LRA={measured.loudness_range_lu:.2f} LU, "
            f"thresh={measured.threshold_lufs:.2f}, offset={measured.target_offset_lu:.2f}"
        )
        return measured


__all__ = ["LoudnessMeasurer"]
