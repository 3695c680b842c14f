"""Version 0.0.1 of the alpine entry type: signed Alpine packages."""

from __future__ import annotations

import base64
import hashlib
import json
import re
import urllib.request
from dataclasses import dataclass, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlsplit

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from tlogkit.apk import ApkError, Package, parse_package
from tlogkit.entries import (
    ArtifactProperties,
    Entry,
    ValidationError,
    decode_entry,
    parse_public_key,
    public_key_emails,
)

__all__ = ["AlpineV001Entry"]

KIND = "alpine"
API_VERSION = "0.0.1"
SHA256 = "sha256"

_ALLOWED_ALGORITHMS = (SHA256,)
_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"
_HASH_LENGTHS = {
    "md4": 32,
    "md5": 32,
    "sha1": 40,
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
    "ripemd128": 32,
    "ripemd160": 40,
    "tiger128": 32,
    "tiger160": 40,
    "tiger192": 48,
    "crc32": 8,
    "crc32b": 8,
}


@dataclass
class _Hash:
    algorithm: Optional[str] = None
    value: Optional[str] = None


@dataclass
class _PublicKey:
    content: Optional[bytes] = None


@dataclass
class _Package:
    content: Optional[bytes] = None
    hash: Optional[_Hash] = None
    pkginfo: Optional[dict[str, str]] = None


@dataclass
class _Schema:
    public_key: Optional[_PublicKey] = None
    package: Optional[_Package] = None


def _is_hash(value: Optional[str], algorithm: Optional[str]) -> bool:
    length = _HASH_LENGTHS.get((algorithm or "").lower())
    if length is None or value is None:
        return False
    return re.fullmatch(f"[a-f0-9]{{{length}}}", value) is not None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _to_json(value: Any) -> Any:
    if is_dataclass(value):
        return {
            _camel(f.name): _to_json(getattr(value, f.name))
            for f in fields(value)
            if getattr(value, f.name) is not None
        }
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {key: _to_json(item) for key, item in value.items()}
    return value


def _canonical_key(data: bytes) -> bytes:
    if _CERT_MARKER in data:
        try:
            cert = x509.load_pem_x509_certificate(data)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise ValidationError(f"invalid certificate: {exc}") from exc
        return cert.public_bytes(serialization.Encoding.PEM)
    return parse_public_key(data).public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _read_artifact(location: str) -> bytes:
    parts = urlsplit(location)
    try:
        if parts.scheme in ("http", "https"):
            with urllib.request.urlopen(location) as response:  # noqa: S310 - scheme checked
                return response.read()
        path = unquote(parts.path) if parts.scheme == "file" else location
        return Path(path).read_bytes()
    except OSError as exc:
        raise ValueError(f"error reading artifact file: {exc}") from exc


class AlpineV001Entry(Entry):
    """A signed Alpine package and the public key that signed it."""

    API_VERSION = API_VERSION

    def __init__(self, spec: Optional[dict] = None) -> None:
        self.model: _Schema = _Schema()
        if spec is not None:
            self.model = self._decode(spec)

    @staticmethod
    def _decode(spec: Any) -> _Schema:
        try:
            return decode_entry(spec if spec is not None else {}, _Schema)
        except ValidationError:
            raise
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def index_keys(self) -> list[str]:
        """The canonical key digest, any certificate e-mails and the package hash."""
        key = self.model.public_key.content if self.model.public_key else None
        if not key:
            raise ValidationError("missing public key")
        canonical = _canonical_key(key)
        result = [hashlib.sha256(canonical).hexdigest()]
        result.extend(public_key_emails(key))
        digest = self.model.package.hash if self.model.package else None
        if digest is not None:
            result.append(f"{digest.algorithm or ''}:{digest.value or ''}".lower())
        return result

    def unmarshal(self, proposed: dict) -> None:
        """Load and validate a proposed alpine entry."""
        if not isinstance(proposed, dict) or proposed.get("kind") != KIND:
            raise ValidationError("cannot unmarshal non Alpine v0.0.1 type")
        self.model = self._decode(proposed.get("spec") or {})
        self._validate_fields()
        self.validate()

    def _validate_fields(self) -> None:
        digest = self.model.package.hash if self.model.package else None
        if digest is None:
            return
        if digest.algorithm is None or digest.value is None:
            raise ValidationError("package.hash: algorithm and value are required")
        if digest.algorithm not in _ALLOWED_ALGORITHMS:
            raise ValidationError(
                f"package.hash.algorithm must be one of {list(_ALLOWED_ALGORITHMS)}"
            )

    def validate(self) -> None:
        """Check that a key and either package content or a valid hash are present."""
        key = self.model.public_key
        if key is None:
            raise ValidationError("missing public key")
        if not key.content:
            raise ValidationError("'content' must be specified for publicKey")
        package = self.model.package
        if package is None:
            raise ValidationError("missing package")
        if package.hash is not None:
            if not _is_hash(package.hash.value, package.hash.algorithm):
                raise ValidationError("invalid value for hash")
        elif not package.content:
            raise ValidationError("'content' must be specified for package")

    def _fetch_external_entities(self) -> tuple[bytes, Package]:
        self.validate()
        key = self.model.public_key
        package = self.model.package
        assert key is not None and package is not None
        content = package.content or b""
        old_sha = package.hash.value if package.hash and package.hash.value else ""
        computed = hashlib.sha256(content).hexdigest()
        if old_sha and computed != old_sha:
            raise ValidationError(f"SHA mismatch: {computed} != {old_sha}")
        key_pem = _canonical_key(key.content or b"")
        try:
            apk = parse_package(content)
            apk.verify_signature(parse_public_key(key_pem))
        except ApkError as exc:
            raise ValidationError(str(exc)) from exc
        if not old_sha:
            package.hash = _Hash(algorithm=SHA256, value=computed)
        return key_pem, apk

    def canonicalize(self) -> bytes:
        """Verify the package and return the canonical JSON of the entry."""
        key_pem, apk = self._fetch_external_entities()
        package = self.model.package
        assert package is not None and package.hash is not None
        canonical = _Schema(
            public_key=_PublicKey(content=key_pem),
            package=_Package(
                hash=_Hash(algorithm=package.hash.algorithm, value=package.hash.value),
                pkginfo=dict(apk.pkginfo),
            ),
        )
        self.model = canonical
        document = {"apiVersion": API_VERSION, "kind": KIND, "spec": _to_json(canonical)}
        return json.dumps(document, separators=(",", ":"), sort_keys=True).encode("utf-8")

    def attestation(self) -> Optional[bytes]:
        return None

    def create_from_artifact_properties(self, props: ArtifactProperties) -> dict:
        """Build a proposed alpine entry from a package and its signer's public key."""
        artifact = props.artifact_bytes
        if artifact is None:
            if props.artifact_path is None:
                raise ValueError("path to artifact file must be specified")
            artifact = _read_artifact(props.artifact_path)
        public_key = props.public_key_bytes
        if public_key is None:
            if props.public_key_path is None:
                raise ValueError("public key must be provided to verify package signature")
            try:
                public_key = Path(props.public_key_path).read_bytes()
            except OSError as exc:
                raise ValueError(f"error reading public key file: {exc}") from exc

        entry = AlpineV001Entry()
        entry.model = _Schema(
            public_key=_PublicKey(content=bytes(public_key)),
            package=_Package(content=bytes(artifact)),
        )
        entry.validate()
        try:
            entry._fetch_external_entities()
        except ValidationError as exc:
            raise ValidationError(f"error retrieving external entities: {exc}") from exc
        return {"apiVersion": entry.api_version(), "kind": KIND, "spec": _to_json(entry.model)}