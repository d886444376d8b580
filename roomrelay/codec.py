"""Frame codecs: CBOR for binary frames, JSON for text frames."""

from __future__ import annotations

import json
from typing import Any

import cbor2

from .constants import MAX_FRAME_SIZE

CODEC_JSON = "json"
CODEC_CBOR = "cbor"
CODECS = (CODEC_JSON, CODEC_CBOR)


class FrameError(ValueError):
    """Raised when a frame cannot be decoded into a dict."""


def encode(obj: dict) -> bytes:
    """Encode a frame to CBOR bytes.

    Args:
        obj: Frame dictionary to encode

    Returns:
        CBOR encoded bytes
    """
    return cbor2.dumps(obj)


def decode(data: bytes) -> dict:
    """Decode CBOR bytes to a frame.

    Args:
        data: CBOR encoded bytes

    Returns:
        Decoded frame dictionary

    Raises:
        FrameError: If data exceeds the size limit or is not a CBOR map
    """
    if len(data) > MAX_FRAME_SIZE:
        raise FrameError(f"frame too large: {len(data)} bytes (max {MAX_FRAME_SIZE})")
    try:
        obj = cbor2.loads(data)
    except (cbor2.CBORDecodeError, EOFError) as e:
        raise FrameError(f"invalid CBOR: {e}") from e
    if not isinstance(obj, dict):
        raise FrameError("frame must be a map")
    return obj


def encode_text(obj: dict) -> str:
    """Encode a frame to a JSON string."""
    return json.dumps(obj, separators=(",", ":"))


def decode_text(data: str) -> dict[str, Any]:
    """Decode a JSON text frame.

    Raises:
        FrameError: If data exceeds the size limit or is not a JSON object
    """
    if len(data) > MAX_FRAME_SIZE:
        raise FrameError(f"frame too large: {len(data)} chars (max {MAX_FRAME_SIZE})")
    try:
        obj = json.loads(data)
    except json.JSONDecodeError as e:
        raise FrameError(f"invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise FrameError("frame must be a JSON object")
    return obj
