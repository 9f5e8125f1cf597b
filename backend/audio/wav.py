# backend/audio/wav.py
"""
Minimal RIFF/WAVE (PCM) container codec.

Layout (44-byte header, little-endian):
     0  "RIFF"
     4  u32  36 + data_length
     8  "WAVE"
    12  "fmt "
    16  u32  16 (fmt chunk size)
    20  u16  1 (PCM)
    22  u16  channels
    24  u32  sample_rate_hz
    28  u32  byte_rate
    32  u16  block_align
    34  u16  bits_per_sample
    36  "data"
    40  u32  data_length
    44  samples...

Usage example:

    container = wrap(pcm, sample_rate_hz=24_000, channels=1, bits_per_sample=16)

    header, samples = unwrap(container)
    piece = reheader(samples[:4800], header)

reheader() is the only place size fields are recomputed; every other header
byte is copied verbatim from the source header.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from constants import (
    RAW_PCM_FORMAT,
    WAV_DATA_SIZE_OFFSET,
    WAV_FMT_CHUNK_BYTES,
    WAV_FORMAT_PCM,
    WAV_HEADER_BYTES,
    WAV_MAGIC_MIN_BYTES,
    WAV_RIFF_SIZE_BASE,
    WAV_RIFF_SIZE_OFFSET,
    PcmFormat,
)


RIFF_MAGIC = b"RIFF"
WAVE_MAGIC = b"WAVE"

_HEADER_STRUCT = struct.Struct("<4sI4s4sIHHIIHH4sI")


# -------------------------
# Exceptions
# -------------------------

class MalformedAudioError(ValueError):
    """
    Raised when bytes claimed to be a container cannot be parsed.

    Callers recover locally (raw-PCM treatment or placeholder audio);
    this error is never surfaced to clients.
    """


# -------------------------
# Header view
# -------------------------

@dataclass(frozen=True)
class WavHeader:
    """
    Parsed view over a 44-byte container header.

    `raw` is kept byte-for-byte so reheader() can copy fields it does not
    understand.
    """
    raw: bytes

    def _u16(self, offset: int) -> int:
        return struct.unpack_from("<H", self.raw, offset)[0]

    def _u32(self, offset: int) -> int:
        return struct.unpack_from("<I", self.raw, offset)[0]

    @property
    def channels(self) -> int:
        return self._u16(22)

    @property
    def sample_rate_hz(self) -> int:
        return self._u32(24)

    @property
    def byte_rate(self) -> int:
        return self._u32(28)

    @property
    def block_align(self) -> int:
        return self._u16(32)

    @property
    def bits_per_sample(self) -> int:
        return self._u16(34)

    @property
    def riff_size(self) -> int:
        return self._u32(WAV_RIFF_SIZE_OFFSET)

    @property
    def data_length(self) -> int:
        return self._u32(WAV_DATA_SIZE_OFFSET)

    def pcm_format(self) -> PcmFormat:
        return PcmFormat(
            sample_rate_hz=self.sample_rate_hz,
            channels=self.channels,
            bits_per_sample=self.bits_per_sample,
        )


# -------------------------
# Codec
# -------------------------

def wrap(
    raw_samples: bytes,
    sample_rate_hz: int,
    channels: int,
    bits_per_sample: int,
) -> bytes:
    """Build a PCM container around raw sample bytes."""
    if sample_rate_hz <= 0 or channels <= 0 or bits_per_sample <= 0:
        raise ValueError("sample_rate_hz, channels and bits_per_sample must be > 0")

    block_align = channels * (bits_per_sample // 8)
    byte_rate = sample_rate_hz * block_align
    data_length = len(raw_samples)

    header = _HEADER_STRUCT.pack(
        RIFF_MAGIC,
        WAV_RIFF_SIZE_BASE + data_length,
        WAVE_MAGIC,
        b"fmt ",
        WAV_FMT_CHUNK_BYTES,
        WAV_FORMAT_PCM,
        channels,
        sample_rate_hz,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        data_length,
    )
    return header + bytes(raw_samples)


def is_container(data: bytes) -> bool:
    """True if the payload carries the RIFF/WAVE magic markers."""
    return (
        len(data) >= WAV_MAGIC_MIN_BYTES
        and data[0:4] == RIFF_MAGIC
        and data[8:12] == WAVE_MAGIC
    )


def unwrap(data: bytes) -> tuple[WavHeader, bytes]:
    """
    Split a container into its header and raw sample bytes.

    Raises:
        MalformedAudioError if the magic markers are missing or the payload is
        shorter than a full header.
    """
    if len(data) < WAV_HEADER_BYTES:
        raise MalformedAudioError(
            f"container too short: {len(data)} < {WAV_HEADER_BYTES} bytes"
        )
    if not is_container(data):
        raise MalformedAudioError("missing RIFF/WAVE markers")

    header = WavHeader(raw=bytes(data[:WAV_HEADER_BYTES]))
    if header.channels == 0 or header.bits_per_sample == 0:
        raise MalformedAudioError("container declares zero channels or bit depth")

    return header, bytes(data[WAV_HEADER_BYTES:])


def reheader(raw_samples: bytes, header: WavHeader) -> bytes:
    """
    Re-wrap raw samples with a copy of `header`, fixing both size fields.

    RIFF size = 36 + len(raw_samples); data size = len(raw_samples).
    """
    buf = bytearray(header.raw)
    data_length = len(raw_samples)
    struct.pack_into("<I", buf, WAV_RIFF_SIZE_OFFSET, WAV_RIFF_SIZE_BASE + data_length)
    struct.pack_into("<I", buf, WAV_DATA_SIZE_OFFSET, data_length)
    return bytes(buf) + bytes(raw_samples)


def split_samples(
    data: bytes,
    default_format: PcmFormat = RAW_PCM_FORMAT,
) -> tuple[WavHeader | None, bytes, PcmFormat]:
    """
    Return (header, samples, format) for either a container or raw PCM.

    Raw payloads come back with header=None and `default_format`.

    Raises:
        MalformedAudioError if the payload looks like a container but is not
        a valid one; callers decide whether to fall back to raw.
    """
    if not is_container(data):
        return None, bytes(data), default_format

    header, samples = unwrap(data)
    return header, samples, header.pcm_format()
