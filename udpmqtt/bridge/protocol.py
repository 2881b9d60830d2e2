"""CloudEvent envelope framing shared by the UDP and MQTT sides.

Payloads on both transports use the CloudEvents 1.0 JSON structured format:
a UTF-8 JSON object carrying the context attributes and the event data.
Text and JSON data travel in ``data``; binary data travels base64-encoded in
``data_base64``.
"""
from __future__ import annotations

import base64
import binascii
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from udpmqtt.errors import CreationError, DecodeError

SPEC_VERSION = "1.0"

# Attributes with a dedicated Envelope field; everything else is an extension.
_OPTIONAL_STRING_ATTRS = ("datacontenttype", "time", "subject", "dataschema")
_KNOWN_ATTRS = frozenset(
    ("specversion", "id", "type", "source", "data", "data_base64")
    + _OPTIONAL_STRING_ATTRS
)


@dataclass(frozen=True)
class Envelope:
    """A CloudEvent as it crosses the bridge."""
    id: str                               # unique per event instance
    type: str                             # reverse-DNS category
    source: str = ""                      # URI-reference of the producer
    data: Any = None                      # str, bytes or a JSON value
    specversion: str = SPEC_VERSION
    datacontenttype: Optional[str] = None
    time: Optional[str] = None            # RFC 3339 timestamp
    subject: Optional[str] = None
    dataschema: Optional[str] = None
    extensions: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "specversion": self.specversion,
            "id": self.id,
            "source": self.source,
            "type": self.type,
        }
        for name in _OPTIONAL_STRING_ATTRS:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        for name, value in self.extensions.items():
            out[name] = value
        if isinstance(self.data, (bytes, bytearray, memoryview)):
            out["data_base64"] = base64.b64encode(bytes(self.data)).decode("ascii")
        elif self.data is not None:
            out["data"] = self.data
        return out

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, payload: bytes) -> "Envelope":
        try:
            text = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"payload is not UTF-8: {e}") from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise DecodeError(f"payload is not JSON: {e.msg}") from e
        except (RecursionError, ValueError) as e:
            raise DecodeError(f"payload is not decodable JSON: {e}") from e

        if not isinstance(raw, dict):
            raise DecodeError("envelope must be a JSON object")
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Envelope":
        specversion = raw.get("specversion", SPEC_VERSION)
        if specversion != SPEC_VERSION:
            raise DecodeError(f"unsupported specversion: {specversion!r}")

        event_id = _required_string(raw, "id")
        event_type = _required_string(raw, "type")

        source = raw.get("source", "")
        if not isinstance(source, str):
            raise DecodeError("'source' must be a string")

        optional: Dict[str, Optional[str]] = {}
        for name in _OPTIONAL_STRING_ATTRS:
            value = raw.get(name)
            if value is not None and not isinstance(value, str):
                raise DecodeError(f"{name!r} must be a string")
            optional[name] = value

        if "data" in raw and "data_base64" in raw:
            raise DecodeError("'data' and 'data_base64' are mutually exclusive")

        data: Any = raw.get("data")
        if "data_base64" in raw:
            encoded = raw["data_base64"]
            if not isinstance(encoded, str):
                raise DecodeError("'data_base64' must be a string")
            try:
                data = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as e:
                raise DecodeError(f"invalid 'data_base64': {e}") from e

        extensions = {k: v for k, v in raw.items() if k not in _KNOWN_ATTRS}

        return cls(
            id=event_id,
            type=event_type,
            source=source,
            data=data,
            specversion=specversion,
            extensions=extensions,
            **optional,
        )


def _required_string(raw: Mapping[str, Any], name: str) -> str:
    value = raw.get(name)
    if value is None:
        raise DecodeError(f"missing required attribute {name!r}")
    if not isinstance(value, str) or not value:
        raise DecodeError(f"{name!r} must be a non-empty string")
    return value


def decode(payload: bytes) -> Envelope:
    """Parse a wire payload into an Envelope.

    Raises:
        DecodeError: payload is not a well-formed envelope.
    """
    return Envelope.from_bytes(payload)


def encode(envelope: Envelope) -> bytes:
    """Serialize an Envelope to its wire payload."""
    return envelope.to_bytes()


def create(
    event_type: str,
    source: str,
    data: Any = None,
    datacontenttype: Optional[str] = None,
) -> Envelope:
    """Build a new Envelope with a freshly generated id.

    Raises:
        CreationError: the id could not be generated.
    """
    try:
        event_id = str(uuid.uuid4())
    except Exception as e:
        raise CreationError(f"could not generate event id: {e}") from e

    if datacontenttype is None and isinstance(data, str):
        datacontenttype = "text/plain"

    return Envelope(
        id=event_id,
        type=event_type,
        source=source,
        data=data,
        datacontenttype=datacontenttype,
        time=datetime.now(timezone.utc).isoformat(),
    )
