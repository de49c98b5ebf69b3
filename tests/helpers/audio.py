from pathlib import Path

from pydub import AudioSegment
from pydub.generators import Sine


def make_tone(path: str | Path, *, ms: int = 3000, freq: float = 440.0, dbfs: float = -20.0,
              sample_rate: int = 44100, channels: int = 1) -> Path:
    """Render a sine tone with pydub; the format follows the file suffix.

    Needs a real ffmpeg for anything other than WAV.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    seg = Sine(freq, sample_rate=sample_rate).to_audio_segment(duration=int(ms), volume=dbfs)
    seg = seg.set_channels(channels)
    seg.export(p.as_posix(), format=p.suffix.lstrip(".") or "wav")
    return p


def make_silence(path: str | Path, ms: int = 500) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    AudioSegment.silent(duration=int(ms)).export(p.as_posix(), format="wav")
    return p
