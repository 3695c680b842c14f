"""Common pieces shared by every versioned log entry type.

This holds the abstract entry interface, the properties a client passes in
to create a proposed entry, the decoding of abstract entry specs into typed
dataclasses, RFC 8785 JSON canonicalization and PEM public key parsing.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import functools
import inspect
import json
import math
import re
import types
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Optional, Union, get_args, get_origin

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

__all__ = [
    "ValidationError",
    "ArtifactProperties",
    "Entry",
    "decode_entry",
    "canonicalize_json",
    "canonicalize_entry",
    "parse_public_key",
    "public_key_emails",
]

_NONE_TYPE = type(None)
_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"


class ValidationError(ValueError):
    """The content of a request is invalid; maps to an HTTP 400 response."""


@dataclass
class ArtifactProperties:
    """Values passed from a client to create a type-specific proposed entry."""

    artifact_path: Optional[str] = None
    artifact_hash: str = ""
    artifact_bytes: Optional[bytes] = None
    signature_path: Optional[str] = None
    signature_bytes: Optional[bytes] = None
    public_key_path: Optional[str] = None
    public_key_bytes: Optional[bytes] = None
    pki_format: str = ""


class Entry(ABC):
    """Behaviour of one version of one entry type."""

    API_VERSION: ClassVar[str] = ""

    def api_version(self) -> str:
        """The API version this implementation supports."""
        return self.API_VERSION

    @abstractmethod
    def index_keys(self) -> list[str]:
        """Keys under which this entry is added to the external index."""

    @abstractmethod
    def canonicalize(self) -> bytes:
        """Marshal the canonical entry to be put into the log."""

    @abstractmethod
    def unmarshal(self, proposed: dict) -> None:
        """Load an abstract proposed entry into this versioned entry."""

    def attestation(self) -> Optional[bytes]:
        """The attestation to store alongside the entry, if any."""
        return None

    @abstractmethod
    def create_from_artifact_properties(self, props: ArtifactProperties) -> dict:
        """Build a proposed entry from client-supplied artifact properties."""


_LEXEME_PATTERN = re.compile(r"\s*(?:([A-Za-z_][\w.]*)|(\S))")

_KNOWN_NAMES: dict[str, Any] = {
    "bytes": bytes,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "list": list,
    "dict": dict,
    "tuple": tuple,
    "object": object,
    "Any": Any,
    "None": _NONE_TYPE,
    "NoneType": _NONE_TYPE,
    "datetime": datetime,
    "List": list,
    "Dict": dict,
    "Tuple": tuple,
}


class _AnnotationParser:
    """Resolves a string annotation such as ``Optional[dict[str, str]]``."""

    def __init__(self, text: str, namespace: dict) -> None:
        self._lexemes = [
            m.group(1) or m.group(2)
            for m in _LEXEME_PATTERN.finditer(text)
            if (m.group(1) or m.group(2)) not in ("'", '"')
        ]
        self._pos = 0
        self._namespace = namespace

    def _peek(self) -> Optional[str]:
        return self._lexemes[self._pos] if self._pos < len(self._lexemes) else None

    def _next(self) -> str:
        lexeme = self._peek()
        if lexeme is None:
            raise ValueError("unexpected end of annotation")
        self._pos += 1
        return lexeme

    def parse(self) -> Any:
        result = self._union()
        if self._peek() is not None:
            raise ValueError(f"unexpected symbol {self._peek()!r} in annotation")
        return result

    def _union(self) -> Any:
        parts = [self._primary()]
        while self._peek() == "|":
            self._next()
            parts.append(self._primary())
        return parts[0] if len(parts) == 1 else Union[tuple(parts)]

    def _primary(self) -> Any:
        name = self._next()
        args: list[Any] = []
        if self._peek() == "[":
            self._next()
            args.append(self._union())
            while self._peek() == ",":
                self._next()
                args.append(self._union())
            if self._next() != "]":
                raise ValueError("unbalanced brackets in annotation")
        short = name.rsplit(".", 1)[-1]
        if short == "Optional":
            return Union[args[0], None] if args else Any
        if short == "Union":
            return Union[tuple(args)] if args else Any
        base = self._resolve(name)
        if args and base in (list, dict, tuple):
            return base[tuple(args)] if len(args) > 1 else base[args[0]]
        return base

    def _resolve(self, name: str) -> Any:
        head, *rest = name.split(".")
        if head in self._namespace:
            obj = self._namespace[head]
            for part in rest:
                obj = getattr(obj, part, None)
                if obj is None:
                    break
            else:
                return obj
        return _KNOWN_NAMES.get(name.rsplit(".", 1)[-1], Any)


@functools.lru_cache(maxsize=None)
def _field_types(tp: type) -> dict[str, Any]:
    module = inspect.getmodule(tp)
    namespace = dict(vars(module)) if module is not None else {}
    resolved: dict[str, Any] = {}
    for fld in dataclasses.fields(tp):
        annotation = fld.type
        if isinstance(annotation, str):
            try:
                annotation = _AnnotationParser(annotation, namespace).parse()
            except ValueError:
                annotation = Any
        resolved[fld.name] = annotation
    return resolved


def _normalize_key(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


def _parse_datetime(value: str, path: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"{path}: invalid date-time {value!r}") from exc


def _decode_dataclass(value: Any, tp: type, path: str) -> Any:
    if isinstance(value, tp):
        return value
    if not isinstance(value, dict):
        raise ValueError(f"{path}: expected a mapping, got {type(value).__name__}")
    hints = _field_types(tp)
    keys = {_normalize_key(str(k)): k for k in value}
    kwargs = {}
    for fld in dataclasses.fields(tp):
        if not fld.init:
            continue
        source_key = keys.get(_normalize_key(fld.name))
        if source_key is None:
            continue
        kwargs[fld.name] = _decode(value[source_key], hints[fld.name], f"{path}.{fld.name}")
    try:
        return tp(**kwargs)
    except TypeError as exc:
        raise ValueError(f"{path}: {exc}") from exc


def _decode(value: Any, tp: Any, path: str) -> Any:
    if tp is Any or tp is object:
        return value
    origin = get_origin(tp)
    if origin is Union or origin is types.UnionType:
        args = get_args(tp)
        if value is None and _NONE_TYPE in args:
            return None
        failures: list[ValueError] = []
        for option in (a for a in args if a is not _NONE_TYPE):
            try:
                return _decode(value, option, path)
            except ValueError as exc:
                failures.append(exc)
        if failures:
            raise failures[0]
        raise ValueError(f"{path}: no type accepts {value!r}")
    if tp is bytes:
        if value is None:
            raise ValueError(f"{path}: attempted to decode nil data")
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValueError(f"{path}: failed parsing base64 data: {exc}") from exc
        raise ValueError(f"{path}: expected base64 string, got {type(value).__name__}")
    if tp is datetime:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            return _parse_datetime(value, path)
        raise ValueError(f"{path}: expected date-time string, got {value!r}")
    if value is None:
        raise ValueError(f"{path}: missing value")
    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        return _decode_dataclass(value, tp, path)
    if origin is list or tp is list:
        if not isinstance(value, list):
            raise ValueError(f"{path}: expected a list, got {type(value).__name__}")
        args = get_args(tp)
        item_type = args[0] if args else Any
        return [_decode(item, item_type, f"{path}[{i}]") for i, item in enumerate(value)]
    if origin is dict or tp is dict:
        if not isinstance(value, dict):
            raise ValueError(f"{path}: expected a mapping, got {type(value).__name__}")
        args = get_args(tp)
        key_type, value_type = args if args else (Any, Any)
        return {
            _decode(k, key_type, path): _decode(v, value_type, f"{path}.{k}")
            for k, v in value.items()
        }
    if tp is bool:
        if not isinstance(value, bool):
            raise ValueError(f"{path}: expected a boolean, got {value!r}")
        return value
    if tp is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{path}: expected an integer, got {value!r}")
        return value
    if tp is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{path}: expected a number, got {value!r}")
        return float(value)
    if tp is str:
        if not isinstance(value, str):
            raise ValueError(f"{path}: expected a string, got {value!r}")
        return value
    return value


def decode_entry(data: Any, target: type) -> Any:
    """Decode an abstract entry spec into an instance of the dataclass ``target``.

    Keys are matched to fields ignoring case and underscores; strings are
    base64-decoded where a field wants bytes and parsed where it wants a
    datetime. Raises ValueError when the data does not fit.
    """
    return _decode(data, target, "spec")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON number {name}")


def _unique_pairs(pairs: list[tuple[str, Any]]) -> dict:
    result: dict = {}
    for key, value in pairs:
        if key in result:
            raise ValueError(f"duplicate key {key!r}")
        result[key] = value
    return result


def _format_number(number: float) -> str:
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"{number} cannot be represented in JSON")
    if number == 0:
        return "0"
    sign = "-" if number < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(number))).as_tuple()
    digits = "".join(map(str, digit_tuple))
    stripped = digits.rstrip("0")
    exponent += len(digits) - len(stripped)
    k = len(stripped)
    n = k + exponent
    if k <= n <= 21:
        text = stripped + "0" * (n - k)
    elif 0 < n <= 21:
        text = f"{stripped[:n]}.{stripped[n:]}"
    elif -6 < n <= 0:
        text = "0." + "0" * (-n) + stripped
    else:
        power = n - 1
        mantissa = stripped[0] + (f".{stripped[1:]}" if k > 1 else "")
        text = f"{mantissa}e{'+' if power >= 0 else '-'}{abs(power)}"
    return sign + text


def _utf16_order(key: str) -> bytes:
    return key.encode("utf-16-be", "surrogatepass")


def _serialize(value: Any, out: list[str]) -> None:
    if value is None:
        out.append("null")
    elif value is True:
        out.append("true")
    elif value is False:
        out.append("false")
    elif isinstance(value, int):
        try:
            out.append(_format_number(float(value)))
        except OverflowError as exc:
            raise ValueError(f"number {value} is out of range") from exc
    elif isinstance(value, float):
        out.append(_format_number(value))
    elif isinstance(value, str):
        out.append(json.dumps(value, ensure_ascii=False))
    elif isinstance(value, (list, tuple)):
        out.append("[")
        for i, item in enumerate(value):
            if i:
                out.append(",")
            _serialize(item, out)
        out.append("]")
    elif isinstance(value, dict):
        if not all(isinstance(k, str) for k in value):
            raise ValueError("JSON object keys must be strings")
        out.append("{")
        for i, key in enumerate(sorted(value, key=_utf16_order)):
            if i:
                out.append(",")
            out.append(json.dumps(key, ensure_ascii=False))
            out.append(":")
            _serialize(value[key], out)
        out.append("}")
    else:
        raise ValueError(f"cannot canonicalize value of type {type(value).__name__}")


def canonicalize_json(value: Any) -> bytes:
    """Serialize JSON according to RFC 8785 (JSON Canonicalization Scheme).

    ``bytes`` and ``str`` are taken as JSON text; anything else as an
    already-parsed JSON value.
    """
    if isinstance(value, (bytes, bytearray, str)):
        try:
            parsed = json.loads(
                value, object_pairs_hook=_unique_pairs, parse_constant=_reject_constant
            )
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON: {exc}") from exc
    else:
        parsed = value
    out: list[str] = []
    _serialize(parsed, out)
    try:
        return "".join(out).encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValueError(f"invalid string in JSON: {exc}") from exc


def canonicalize_entry(entry: Entry) -> bytes:
    """Canonicalize an entry and serialize it per RFC 8785."""
    return canonicalize_json(entry.canonicalize())


def _load(data: bytes) -> tuple[Optional[x509.Certificate], Any]:
    if isinstance(data, str):
        data = data.encode()
    try:
        if _CERT_MARKER in data:
            cert = x509.load_pem_x509_certificate(data)
            return cert, cert.public_key()
        return None, serialization.load_pem_public_key(data)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValidationError(f"invalid public key: {exc}") from exc


def parse_public_key(data: bytes) -> Any:
    """Parse a PEM public key or PEM certificate and return its public key."""
    _, key = _load(data)
    return key


def public_key_emails(data: bytes) -> list[str]:
    """E-mail addresses in the subject alternative names of a PEM certificate.

    A bare public key carries none.
    """
    cert, _ = _load(data)
    if cert is None:
        return []
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return list(san.value.get_values_for_type(x509.RFC822Name))