from __future__ import annotations

import base64
import subprocess

import numpy as np

PCM16_SCALE = 32768.0


def normalize_audio(
    data: bytes,
    input_sample_rate: int = 16000,
    input_channels: int = 1,
    input_encoding: str = "pcm_f32le",
    target_sample_rate: int = 16000,
) -> np.ndarray:
    """Convert incoming client audio to mono float32 samples at the target rate.

    Raw PCM already at the target rate and mono is decoded with numpy.
    Anything else is shelled out to ffmpeg for conversion.
    """
    if input_sample_rate == target_sample_rate and input_channels == 1:
        if input_encoding == "pcm_f32le":
            return np.frombuffer(data, dtype="<f4").astype(np.float32)
        if input_encoding == "pcm_s16le":
            return pcm16_to_float(data)

    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel", "error",
        "-f", _ffmpeg_format(input_encoding),
        "-ar", str(input_sample_rate),
        "-ac", str(input_channels),
        "-i", "pipe:0",
        "-f", "s16le",
        "-ar", str(target_sample_rate),
        "-ac", "1",
        "pipe:1",
    ]
    result = subprocess.run(cmd, input=data, capture_output=True, check=True)
    return pcm16_to_float(result.stdout)


def _ffmpeg_format(encoding: str) -> str:
    mapping = {
        "pcm_s16le": "s16le",
        "pcm_f32le": "f32le",
        "wav": "wav",
        "ogg": "ogg",
        "webm": "webm",
        "mp3": "mp3",
    }
    return mapping.get(encoding, "f32le")


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Scale [-1, 1] float samples to little-endian 16-bit PCM, clipping overflow."""
    scaled = np.clip(np.asarray(samples, dtype=np.float32) * PCM16_SCALE, -32768, 32767)
    return scaled.astype("<i2").tobytes()


def pcm16_to_float(pcm: bytes) -> np.ndarray:
    return np.frombuffer(pcm, dtype="<i2").astype(np.float32) / PCM16_SCALE


def encode_pcm_blob(samples: np.ndarray, sample_rate: int = 16000) -> dict[str, str]:
    """Realtime-input media blob: base64 PCM16 plus its mime type."""
    return {
        "data": base64.b64encode(float_to_pcm16(samples)).decode("ascii"),
        "mimeType": f"audio/pcm;rate={sample_rate}",
    }


def decode_pcm_payload(data: str, channels: int = 1) -> np.ndarray:
    """Decode a base64 PCM16 payload into float32 samples of the first channel."""
    pcm = base64.b64decode(data)
    # a truncated fragment may end mid-sample
    samples = pcm16_to_float(pcm[: len(pcm) - len(pcm) % 2])
    if channels > 1:
        samples = samples[: len(samples) - len(samples) % channels].reshape(-1, channels)[:, 0]
    return samples


class FrameBuffer:
    """Accumulates arbitrary-size sample blocks and releases fixed-size frames."""

    def __init__(self, frame_size: int) -> None:
        self.frame_size = frame_size
        self._buffer = np.array([], dtype=np.float32)

    def add(self, samples: np.ndarray) -> None:
        self._buffer = np.concatenate([self._buffer, samples.astype(np.float32)])

    def has_frame(self) -> bool:
        return len(self._buffer) >= self.frame_size

    def pop_frame(self) -> np.ndarray:
        frame = self._buffer[: self.frame_size]
        self._buffer = self._buffer[self.frame_size:]
        return frame

    def flush(self) -> np.ndarray | None:
        """Return the partial remainder, if any."""
        if len(self._buffer) == 0:
            return None
        frame = self._buffer
        self._buffer = np.array([], dtype=np.float32)
        return frame
