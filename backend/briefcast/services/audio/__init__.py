"""Episode audio: loudness normalization, concatenation and assembly."""

from .errors import *  # noqa: F401,F403
from .errors import __all__ as _errors_all
from .ffmpeg import AudioTool, CancelToken, FfmpegTool
from .measurer import LoudnessMeasurer
from .models import *  # noqa: F401,F403
from .models import __all__ as _models_all
from .music import MusicLibrary, MusicStore
from .normalizer import Normalizer, target_for
from .concatenator import Concatenator
from .assembler import SectionAssembler
from .orchestrator import EpisodePipeline, PipelineState
from .temp_assets import TemporaryAssetManager

__all__ = [
    *_errors_all,
    *_models_all,
    "AudioTool",
    "CancelToken",
    "FfmpegTool",
    "LoudnessMeasurer",
    "MusicLibrary",
    "MusicStore",
    "Normalizer",
    "target_for",
    "Concatenator",
    "SectionAssembler",
    "EpisodePipeline",
    "PipelineState",
    "TemporaryAssetManager",
]
