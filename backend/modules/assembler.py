from __future__ import annotations

import base64
import os
from typing import Sequence

import numpy as np
import soundfile as sf

from modules.episode_types import SAMPLE_RATE

BYTES_PER_SAMPLE = 2


def _decode(chunk: str | bytes) -> bytes:
    if isinstance(chunk, (bytes, bytearray)):
        return bytes(chunk)
    if not chunk:
        return b""
    return base64.b64decode(chunk)


def merge(chunks: Sequence[str | bytes]) -> str:
    """Concatenate PCM chunks in order; no resampling, no cross-fade."""
    if not chunks:
        return ""
    raw = b"".join(_decode(c) for c in chunks)
    return base64.b64encode(raw).decode("ascii")


def silent_chunk(duration_ms: int, sample_rate: int = SAMPLE_RATE) -> str:
    frames = max(0, int(sample_rate * duration_ms / 1000))
    samples = np.zeros(frames, dtype="<i2")
    return base64.b64encode(samples.tobytes()).decode("ascii")


def pcm_duration_ms(chunk: str | bytes, sample_rate: int = SAMPLE_RATE) -> int:
    frames = len(_decode(chunk)) // BYTES_PER_SAMPLE
    return int(frames * 1000 / sample_rate)


def export_wav(audio: str | bytes, output_path: str, sample_rate: int = SAMPLE_RATE) -> str:
    raw = _decode(audio)
    # Drop a trailing odd byte rather than fail on it.
    usable = len(raw) - (len(raw) % BYTES_PER_SAMPLE)
    samples = np.frombuffer(raw[:usable], dtype="<i2")
    out_dir = os.path.dirname(output_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    sf.write(output_path, samples, sample_rate, subtype="PCM_16")
    return output_path


def total_duration_ms(chunks: Sequence[str | bytes], sample_rate: int = SAMPLE_RATE) -> int:
    """Duration of the chunks once merged, without building the merged buffer."""
    frames = sum(len(_decode(c)) for c in chunks) // BYTES_PER_SAMPLE
    return int(frames * 1000 / sample_rate)
