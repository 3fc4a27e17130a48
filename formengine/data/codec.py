from __future__ import annotations

import hashlib
import json
import zlib
from typing import Any, Dict, Mapping

from formengine.core.canonical import canonical_json
from formengine.data.models import FormSnapshot


# Format marker, bumped if the serialized layout changes.
CODEC_VERSION = 1


class CodecError(ValueError):
    """Blob is not a snapshot written by this codec."""


def _to_dict(snapshot: FormSnapshot) -> Dict[str, Any]:
    return {
        "codec": CODEC_VERSION,
        "form_id": snapshot.form_id,
        "version": snapshot.version,
        "updated_at": snapshot.updated_at,
        "values": snapshot.values,
    }


def serialize(snapshot: FormSnapshot) -> bytes:
    """
    JSON bytes of the snapshot.
    Values must be JSON-compatible (str keys; lists, dicts, numbers, str,
    bool, None) for the round trip to be exact.
    """
    return json.dumps(_to_dict(snapshot), ensure_ascii=False, allow_nan=False).encode("utf-8")


def pack(raw: bytes, level: int = 6) -> bytes:
    return zlib.compress(raw, level)


def compress(snapshot: FormSnapshot, level: int = 6) -> bytes:
    return pack(serialize(snapshot), level)


def decompress(blob: bytes) -> FormSnapshot:
    try:
        raw = json.loads(zlib.decompress(blob).decode("utf-8"))
    except (zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CodecError(f"Corrupt snapshot payload: {e}") from e

    if not isinstance(raw, dict) or raw.get("codec") != CODEC_VERSION:
        raise CodecError("Unknown snapshot payload format")

    return FormSnapshot(
        form_id=str(raw["form_id"]),
        values=dict(raw.get("values") or {}),
        version=int(raw["version"]),
        updated_at=float(raw["updated_at"]),
    )


def checksum(values: Mapping[str, Any]) -> str:
    """SHA-256 over canonical JSON of the values (key order independent)."""
    return hashlib.sha256(canonical_json(dict(values)).encode("utf-8")).hexdigest()
