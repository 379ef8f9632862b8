import json
import math
import re
from typing import Any, Dict, Iterable, Optional, Tuple

import jcs

# Written onto the record after fingerprinting; never part of the hashed content.
PROVENANCE_FIELDS: Tuple[str, ...] = (
    "batch_hash",
    "blockchain_tx_hash",
    "blockchain_timestamp",
    "blockchain_registrar",
    "created_at",
    "updated_at",
)

_ARRAY_INDEX = re.compile(r"^(0|[1-9][0-9]*)$")
_MAX_ARRAY_INDEX = 2 ** 32 - 2
_MAX_SAFE_INTEGER = 2 ** 53
_LONE_SURROGATE = re.compile("([\ud800-\udfff])")


def _render_number(value: Any) -> str:
    """
    Render a number the way ``JSON.stringify`` does. RFC 8785 (JCS) uses the
    ECMAScript number serialization, so the leaf is handed to ``jcs``.
    """
    if isinstance(value, int) and abs(value) >= _MAX_SAFE_INTEGER:
        # JavaScript only ever held this integer as a double.
        try:
            value = float(value)
        except OverflowError as e:
            raise ValueError(f"Integer too large for a batch record: {value}") from e
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise ValueError("NaN/Infinity not allowed in a batch record")
    return jcs.canonicalize(value).decode("utf-8")


def _render_string(value: str) -> str:
    """JCS string escaping; lone surrogates become ``\\udXXX`` as in ``JSON.stringify``."""
    out = []
    for i, part in enumerate(_LONE_SURROGATE.split(value)):
        if i % 2:
            out.append("\\u%04x" % ord(part))
        elif part:
            out.append(jcs.canonicalize(part).decode("utf-8")[1:-1])
    return '"' + "".join(out) + '"'


def _ordered_keys(keys: Iterable[str]) -> list:
    """
    Key order of a JavaScript object built by inserting sorted keys:
    integer-like keys first in numeric order, then the rest sorted by
    UTF-16 code units.
    """
    indices = []
    names = []
    for key in keys:
        if not isinstance(key, str):
            raise TypeError(f"Mapping keys must be strings, got {type(key).__name__}")
        if _ARRAY_INDEX.match(key) and int(key) <= _MAX_ARRAY_INDEX:
            indices.append(key)
        else:
            names.append(key)
    indices.sort(key=int)
    names.sort(key=lambda k: k.encode("utf-16-be", "surrogatepass"))
    return indices + names


def _encode(data: Any) -> str:
    if data is None:
        return "null"
    if data is True:
        return "true"
    if data is False:
        return "false"
    if isinstance(data, (int, float)):
        return _render_number(data)
    if isinstance(data, str):
        return _render_string(data)
    if isinstance(data, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in data) + "]"
    if isinstance(data, dict):
        return "{" + ",".join(
            _render_string(key) + ":" + _encode(data[key])
            for key in _ordered_keys(data.keys())
        ) + "}"
    raise TypeError(f"Unsupported type in batch record: {type(data).__name__}")


class CanonicalJson:
    """
    Handles deterministic JSON serialization for batch records.
    Output is byte-identical to JavaScript's ``JSON.stringify`` of an object
    whose keys were inserted in sorted order, so fingerprints computed here
    match the ones already anchored by the registration service.
    """

    @staticmethod
    def dumps(data: Any) -> str:
        """
        Serialize data to a canonical JSON string.

        Rules:
        - Keys sorted (integer-like keys first, as JavaScript orders them)
        - No whitespace after separators
        - UTF-8 characters preserved
        - Numbers formatted as ECMAScript does (``1.0`` -> ``1``, ``1e21`` -> ``1e+21``)
        """
        return _encode(data)

    @staticmethod
    def loads(json_str: str) -> Any:
        """
        Load data from a JSON string.
        """
        return json.loads(json_str)


def strip_provenance(record: Dict[str, Any]) -> Dict[str, Any]:
    """Drop the top-level provenance fields. Nested fields of the same name are kept."""
    return {k: v for k, v in record.items() if k not in PROVENANCE_FIELDS}


def normalize(value: Any) -> Optional[Any]:
    """
    Recursively remove empty values. Returns ``None`` when ``value`` itself is empty.

    ``None`` and ``""`` are empty. A list or dict is empty once all of its
    members have been removed. ``0``, ``False`` and whitespace-only strings
    are kept.
    """
    if value is None or value == "":
        return None

    if isinstance(value, (list, tuple)):
        items = [normalize(item) for item in value]
        items = [item for item in items if item is not None]
        return items or None

    if isinstance(value, dict):
        normalized = {}
        for key in _ordered_keys(value.keys()):
            item = normalize(value[key])
            if item is not None:
                normalized[key] = item
        return normalized or None

    return value


def canonicalize(record: Dict[str, Any]) -> bytes:
    """
    Canonical UTF-8 bytes of a batch record: provenance stripped, empty
    values removed, keys sorted, compact JSON.
    """
    if not isinstance(record, dict):
        raise TypeError(f"A batch record must be a mapping, got {type(record).__name__}")
    normalized = normalize(strip_provenance(record))
    if normalized is None:
        return b""
    return CanonicalJson.dumps(normalized).encode("utf-8")
