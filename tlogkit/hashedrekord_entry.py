"""Version 0.0.1 of the hashedrekord entry type.

A hashedrekord entry records a detached x509 signature over the SHA-256
digest of an artifact, together with the public key or certificate that
verifies it. The artifact itself is never sent.
"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from dataclasses import dataclass, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from tlogkit.entries import (
    ArtifactProperties,
    Entry,
    ValidationError,
    decode_entry,
    parse_public_key,
    public_key_emails,
)

__all__ = ["HashedRekordV001Entry"]

KIND = "hashedrekord"
API_VERSION = "0.0.1"
SHA256 = "sha256"
X509_FORMAT = "x509"

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
class _Signature:
    content: Optional[bytes] = None
    public_key: Optional[_PublicKey] = None


@dataclass
class _Data:
    hash: Optional[_Hash] = None


@dataclass
class _Schema:
    signature: Optional[_Signature] = None
    data: Optional[_Data] = None


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


def _verify_digest(public_key: Any, signature: bytes, digest: bytes) -> None:
    algorithm = Prehashed(hashes.SHA256())
    try:
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, digest, ec.ECDSA(algorithm))
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, digest, padding.PKCS1v15(), algorithm)
        else:
            raise ValidationError(
                f"verifying signature: unsupported key type {type(public_key).__name__}"
            )
    except (InvalidSignature, ValueError) as exc:
        if isinstance(exc, ValidationError):
            raise
        raise ValidationError(f"verifying signature: {exc or 'invalid signature'}") from exc


def _read_file(path: str, what: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise ValueError(f"error reading {what} file: {exc}") from exc


def _marshal(spec: _Schema) -> bytes:
    document = {"apiVersion": API_VERSION, "kind": KIND, "spec": _to_json(spec)}
    return json.dumps(document, separators=(",", ":"), sort_keys=True).encode("utf-8")


class HashedRekordV001Entry(Entry):
    """A signature over an artifact digest, with the key that verifies it."""

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
        """The key digest, any certificate e-mails and the artifact hash."""
        signature = self.model.signature
        key = signature.public_key.content if signature and signature.public_key else None
        if not key:
            raise ValidationError("missing public key")
        result = [hashlib.sha256(key).hexdigest()]
        result.extend(public_key_emails(key))
        digest = self.model.data.hash if self.model.data else None
        if digest is not None:
            result.append(f"{digest.algorithm or ''}:{digest.value or ''}".lower())
        return result

    def unmarshal(self, proposed: dict) -> None:
        """Load and validate a proposed hashedrekord entry."""
        if not isinstance(proposed, dict) or proposed.get("kind") != KIND:
            raise ValidationError("cannot unmarshal non Rekord v0.0.1 type")
        self.model = self._decode(proposed.get("spec") or {})
        self._validate_fields()
        self.validate()

    def _validate_fields(self) -> None:
        digest = self.model.data.hash if self.model.data else None
        if digest is None:
            return
        if digest.algorithm is None or digest.value is None:
            raise ValidationError("data.hash: algorithm and value are required")
        if digest.algorithm not in _ALLOWED_ALGORITHMS:
            raise ValidationError(
                f"data.hash.algorithm must be one of {list(_ALLOWED_ALGORITHMS)}"
            )

    def validate(self) -> None:
        """Check the fields together and verify the signature over the digest."""
        signature = self.model.signature
        if signature is None:
            raise ValidationError("missing signature")
        if not signature.content:
            raise ValidationError("signature content must not be empty")
        if signature.public_key is None:
            raise ValidationError("missing public key")
        if not signature.public_key.content:
            raise ValidationError("public key content must not be empty")
        public_key = parse_public_key(signature.public_key.content)

        data = self.model.data
        if data is None:
            raise ValidationError("missing data")
        digest = data.hash
        if digest is None:
            raise ValidationError("missing hash")
        if not _is_hash(digest.value, digest.algorithm):
            raise ValidationError("invalid value for hash")
        _verify_digest(public_key, signature.content, bytes.fromhex(digest.value or ""))

    def canonicalize(self) -> bytes:
        """Return the canonical JSON of the entry, without any artifact content."""
        self.validate()
        signature = self.model.signature
        data = self.model.data
        assert signature is not None and signature.public_key is not None and data is not None
        canonical = _Schema(
            signature=_Signature(
                content=signature.content,
                public_key=_PublicKey(content=_canonical_key(signature.public_key.content or b"")),
            ),
            data=_Data(hash=data.hash),
        )
        self.model = canonical
        return _marshal(canonical)

    def attestation(self) -> Optional[bytes]:
        return None

    def create_from_artifact_properties(self, props: ArtifactProperties) -> dict:
        """Build a proposed hashedrekord entry from a signature, key and artifact hash."""
        if props.pki_format != X509_FORMAT:
            raise ValueError(
                "hashedrekord entries can only be created for artifacts signed with x509-based PKI"
            )
        signature = props.signature_bytes
        if signature is None:
            if props.signature_path is None:
                raise ValueError("a detached signature must be provided")
            signature = _read_file(props.signature_path, "signature")
        public_key = props.public_key_bytes
        if public_key is None:
            if props.public_key_path is None:
                raise ValueError("public key must be provided to verify detached signature")
            public_key = _read_file(props.public_key_path, "public key")

        entry = HashedRekordV001Entry()
        entry.model = _Schema(
            signature=_Signature(
                content=bytes(signature), public_key=_PublicKey(content=bytes(public_key))
            ),
            data=_Data(hash=_Hash(algorithm=SHA256, value=props.artifact_hash)),
        )
        entry.validate()
        return {"apiVersion": entry.api_version(), "kind": KIND, "spec": _to_json(entry.model)}