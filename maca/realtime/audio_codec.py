"""
Audio Codec Module

Binary helpers for moving synthesized audio over the avatar data channel:
- bytes <-> base64 text
- WAV container <-> raw PCM payload
- Splitting long base64 payloads into bounded chunks

All functions are pure and stateless.
"""

import base64
import binascii
import io
import struct
import warnings
import wave
from typing import Iterator, Union

from maca.errors import DecodeError, MalformedContainer
from maca.logger import get_logger

logger = get_logger(__name__)

# Multiple of 3 so every slice encodes without padding except the last
ENCODE_SLICE_BYTES = 3 * 16384

RIFF_HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8


def to_base64(data: Union[bytes, bytearray, memoryview]) -> str:
    """
    Encode bytes as standard, padded base64.

    Large buffers are encoded slice by slice. Slices are 3-byte aligned so
    the concatenation equals a single-shot encoding.
    """
    view = memoryview(data)
    if len(view) <= ENCODE_SLICE_BYTES:
        return base64.b64encode(view).decode("ascii")

    parts = [
        base64.b64encode(view[start:start + ENCODE_SLICE_BYTES]).decode("ascii")
        for start in range(0, len(view), ENCODE_SLICE_BYTES)
    ]
    return "".join(parts)


def from_base64(text: Union[str, bytes]) -> bytes:
    """
    Decode standard base64.

    Raises:
        DecodeError: If the input is not valid base64
    """
    if isinstance(text, str):
        try:
            text = text.strip().encode("ascii")
        except UnicodeEncodeError as e:
            raise DecodeError(f"Base64 input contains non-ASCII characters: {e}") from e

    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Malformed base64 input: {e}") from e


def _malformed(reason: str) -> None:
    logger.warning(f"Malformed WAV container, using raw bytes: {reason}")
    warnings.warn(reason, MalformedContainer, stacklevel=3)


def extract_pcm_from_wav(wav: bytes) -> bytes:
    """
    Return the payload of the `data` chunk of a RIFF/WAVE buffer.

    Chunk headers are scanned from the end of the 12-byte RIFF header. If the
    buffer is not RIFF/WAVE or has no `data` chunk, the input is returned
    unchanged and a MalformedContainer warning is issued. Never raises.
    """
    if len(wav) < RIFF_HEADER_SIZE or wav[0:4] != b"RIFF" or wav[8:12] != b"WAVE":
        _malformed("missing RIFF/WAVE header")
        return wav

    offset = RIFF_HEADER_SIZE
    while offset + CHUNK_HEADER_SIZE <= len(wav):
        chunk_id = wav[offset:offset + 4]
        (chunk_size,) = struct.unpack_from("<I", wav, offset + 4)
        body_start = offset + CHUNK_HEADER_SIZE

        if chunk_id == b"data":
            body_end = min(body_start + chunk_size, len(wav))
            if body_start + chunk_size > len(wav):
                logger.debug(
                    f"WAV data chunk declares {chunk_size} bytes, "
                    f"only {len(wav) - body_start} present"
                )
            return wav[body_start:body_end]

        # Chunks are word aligned
        offset = body_start + chunk_size + (chunk_size & 1)

    _malformed("no data chunk found")
    return wav


def pcm_to_wav(pcm: bytes, sample_rate: int, channels: int = 1, sample_width: int = 2) -> bytes:
    """Wrap raw PCM frames in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(sample_width)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buffer.getvalue()


class ChunkSequence:
    """
    Ordered, non-overlapping slices of a string, each at most `size` chars.

    Lazy and restartable: every iteration walks the source string again.
    """

    def __init__(self, text: str, size: int):
        if size <= 0:
            raise ValueError(f"Chunk size must be positive, got {size}")
        self._text = text
        self._size = size

    def __iter__(self) -> Iterator[str]:
        for start in range(0, len(self._text), self._size):
            yield self._text[start:start + self._size]

    def __len__(self) -> int:
        return -(-len(self._text) // self._size)

    def __repr__(self) -> str:
        return f"ChunkSequence(chars={len(self._text)}, size={self._size}, chunks={len(self)})"


def chunk(text: str, max_chunk_chars: int) -> ChunkSequence:
    """Split text into ordered chunks of at most max_chunk_chars characters."""
    return ChunkSequence(text, max_chunk_chars)
