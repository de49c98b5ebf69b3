from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional, Sequence

from .errors import ConcatenationError
from .ffmpeg import AudioTool, CancelToken
from .models import AudioAsset
from .temp_assets import TemporaryAssetManager

log = logging.getLogger(__name__)


class Concatenator:
    """Order-preserving, lossless joining of same-format assets.

    Uses the ffmpeg concat demuxer with stream copy, so every input must share
    codec, sample rate and channel count. Mismatches fail fast; nothing is
    resampled behind the caller's back.
    """

    def __init__(self, tool: AudioTool, scratch: Optional[TemporaryAssetManager] = None) -> None:
        self.tool = tool
        self.scratch = scratch

    def concatenate(
        self,
        assets: Sequence[AudioAsset],
        output_path: Path,
        cancel: Optional[CancelToken] = None,
    ) -> AudioAsset:
        output_path = Path(output_path)
        if not assets:
            raise ConcatenationError("No input files provided for concatenation")

        if len(assets) == 1:
            only = assets[0]
            try:
                shutil.copyfile(only.path, output_path)
            except OSError as e:
                raise ConcatenationError(f"single-input copy failed: {e}", assets=[only.asset_id]) from e
            log.debug(f"[concat] single input {only.asset_id} copied to {output_path.name}")
            return only.moved_to(output_path)

        first = assets[0]
        for idx, asset in enumerate(assets[1:], start=1):
            if not asset.is_compatible(first):
                codec, rate, channels = asset.format_key
                raise ConcatenationError(
                    f"input #{idx} {asset.asset_id} is {codec} {rate}Hz/{channels}ch, "
                    f"expected {first.codec} {first.sample_rate}Hz/{first.channels}ch",
                    assets=[asset.asset_id],
                )

        if self.scratch is not None:
            list_file = self.scratch.allocate("concat-list", suffix=".txt")
            owns_list = False
        else:
            list_file = output_path.with_suffix(output_path.suffix + ".concat.txt")
            owns_list = True

        log.info(f"[concat] joining {len(assets)} inputs into {output_path.name}")
        try:
            self.tool.concat_copy([a.path for a in assets], output_path, list_file, cancel=cancel)
        finally:
            if owns_list:
                try:
                    list_file.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    log.warning(f"[concat] failed to delete concat list {list_file}: {e}")

        joined = self.tool.probe(output_path, cancel=cancel)
        expected = sum(a.duration_seconds for a in assets)
        if expected > 0 and abs(joined.duration_seconds - expected) / expected > 0.01:
            log.warning(
                f"[concat] {output_path.name} duration {joined.duration_seconds:.2f}s "
                f"differs from inputs' sum {expected:.2f}s"
            )
        return joined


__all__ = ["Concatenator"]
