"""
Snapshot codec.
Serializes a set of named collections into a backup payload and back.

The payload is UTF-8 JSON with sorted keys and fixed separators, so the
same snapshot always encodes to the same bytes. ``datetime`` and ``date``
values are tagged so they decode to the same type.
"""
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from storevault.constants import PAYLOAD_FORMAT_VERSION
from storevault.exceptions import CorruptPayloadException

DATETIME_TAG = "$date"
DATE_TAG = "$day"
ESCAPE_TAG = "$escape"
_TAGS = (DATETIME_TAG, DATE_TAG, ESCAPE_TAG)


@dataclass
class Snapshot:
    """Decoded payload: ordered collections plus export metadata"""
    collections: Dict[str, List[dict]]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_documents(self) -> int:
        return sum(len(docs) for docs in self.collections.values())

    def document_counts(self) -> Dict[str, int]:
        return {name: len(docs) for name, docs in self.collections.items()}


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    if isinstance(value, date):
        return {DATE_TAG: value.isoformat()}
    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Document keys must be strings, got {type(key).__name__}")
            encoded[key] = _encode_value(item)
        # A plain dict that looks like a tag must not be read back as one
        if len(encoded) == 1 and next(iter(encoded)) in _TAGS:
            return {ESCAPE_TAG: encoded}
        return encoded
    if isinstance(value, (list, tuple)):
        return [_encode_value(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise TypeError(f"Cannot encode value of type {type(value).__name__}")


def _decode_value(value: Any) -> Any:
    if isinstance(value, list):
        return [_decode_value(item) for item in value]
    if not isinstance(value, dict):
        return value

    if len(value) == 1:
        tag, inner = next(iter(value.items()))
        if tag == DATETIME_TAG:
            return datetime.fromisoformat(inner)
        if tag == DATE_TAG:
            return date.fromisoformat(inner)
        if tag == ESCAPE_TAG:
            if not isinstance(inner, dict):
                raise ValueError("escaped value is not an object")
            return {key: _decode_value(item) for key, item in inner.items()}

    return {key: _decode_value(item) for key, item in value.items()}


def encode_document(doc: dict) -> dict:
    """Convert one document into its JSON-safe tagged form"""
    return _encode_value(doc)


def decode_document(data: dict) -> dict:
    """Inverse of ``encode_document``"""
    return _decode_value(data)


def encode(collections: Mapping[str, Sequence[dict]],
           metadata: Optional[Mapping[str, Any]] = None) -> bytes:
    """
    Encode collections into a payload.

    Args:
        collections: Mapping of collection name to documents; order is kept
        metadata: Optional export metadata (backup id, timestamps)

    Returns:
        Payload bytes
    """
    document = {
        "format_version": PAYLOAD_FORMAT_VERSION,
        "collection_order": list(collections.keys()),
        "collections": {
            name: [_encode_value(doc) for doc in docs]
            for name, docs in collections.items()
        },
        "metadata": _encode_value(dict(metadata or {})),
    }
    return json.dumps(
        document,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def decode(payload: bytes) -> Snapshot:
    """
    Decode a payload produced by ``encode``.

    Raises:
        CorruptPayloadException: invalid JSON, unknown format version or
            malformed layout. Nothing is returned in that case.
    """
    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        document = json.loads(text)
    except (UnicodeDecodeError, ValueError) as e:
        raise CorruptPayloadException(f"not valid JSON ({e})")

    if not isinstance(document, dict):
        raise CorruptPayloadException("top level is not an object")

    version = document.get("format_version")
    if version != PAYLOAD_FORMAT_VERSION:
        raise CorruptPayloadException(
            f"unsupported format version {version!r}, expected {PAYLOAD_FORMAT_VERSION}"
        )

    raw_collections = document.get("collections")
    order = document.get("collection_order")
    if not isinstance(raw_collections, dict) or not isinstance(order, list):
        raise CorruptPayloadException("missing collections")
    if sorted(order) != sorted(raw_collections.keys()) or len(set(order)) != len(order):
        raise CorruptPayloadException("collection order does not match collections")

    collections: Dict[str, List[dict]] = {}
    try:
        for name in order:
            docs = raw_collections[name]
            if not isinstance(docs, list) or not all(isinstance(doc, dict) for doc in docs):
                raise CorruptPayloadException(f"collection '{name}' is not a list of documents")
            collections[name] = [_decode_value(doc) for doc in docs]
        metadata = _decode_value(document.get("metadata") or {})
    except (TypeError, ValueError) as e:
        raise CorruptPayloadException(f"invalid value ({e})")

    if not isinstance(metadata, dict):
        raise CorruptPayloadException("metadata is not an object")

    return Snapshot(collections=collections, metadata=metadata)
