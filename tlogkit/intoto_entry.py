"""Version 0.0.1 of the intoto entry type: DSSE-signed in-toto attestations."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from tlogkit.entries import (
    ArtifactProperties,
    Entry,
    ValidationError,
    decode_entry,
    parse_public_key,
)

__all__ = [
    "PAYLOAD_TYPE",
    "DEFAULT_MAX_ATTESTATION_SIZE",
    "Envelope",
    "IntotoV001Entry",
    "parse_statement",
    "pae",
]

logger = logging.getLogger(__name__)

KIND = "intoto"
API_VERSION = "0.0.1"
SHA256 = "sha256"
PAYLOAD_TYPE = "application/vnd.in-toto+json"
DEFAULT_MAX_ATTESTATION_SIZE = 100 * 1024

_ALLOWED_ALGORITHMS = (SHA256,)
_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"


def pae(payload_type: str, payload: bytes) -> bytes:
    """DSSE pre-authentication encoding of a payload and its type."""
    type_bytes = payload_type.encode("utf-8")
    return b"DSSEv1 %d %s %d %s" % (len(type_bytes), type_bytes, len(payload), bytes(payload))


def _b64decode_std(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def _b64decode_any(text: str) -> bytes:
    try:
        return _b64decode_std(text)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        pass
    try:
        return base64.b64decode(text.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise ValidationError(f"invalid base64 data: {exc}") from exc


@dataclass
class Envelope:
    """A DSSE envelope; ``payload`` and each signature's ``sig`` are base64 text."""

    payload_type: str = ""
    payload: str = ""
    signatures: list[dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_json(cls, text: str | bytes) -> "Envelope":
        """Parse an envelope from its JSON form."""
        try:
            document = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError(f"invalid envelope JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise ValidationError("envelope must be a JSON object")
        payload_type = document.get("payloadType") or ""
        payload = document.get("payload") or ""
        raw_signatures = document.get("signatures") or []
        if not isinstance(payload_type, str) or not isinstance(payload, str):
            raise ValidationError("envelope payload and payloadType must be strings")
        if not isinstance(raw_signatures, list):
            raise ValidationError("envelope signatures must be a list")
        signatures = []
        for item in raw_signatures:
            if not isinstance(item, dict):
                raise ValidationError("envelope signature must be an object")
            keyid = item.get("keyid") or ""
            sig = item.get("sig") or ""
            if not isinstance(keyid, str) or not isinstance(sig, str):
                raise ValidationError("envelope signature fields must be strings")
            signatures.append({"keyid": keyid, "sig": sig})
        return cls(payload_type=payload_type, payload=payload, signatures=signatures)

    def to_json(self) -> str:
        """Serialize the envelope to JSON."""
        return json.dumps(
            {
                "payloadType": self.payload_type,
                "payload": self.payload,
                "signatures": self.signatures,
            }
        )


def _verify(public_key: Any, signature: bytes, data: bytes) -> bool:
    try:
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        else:
            raise ValidationError(f"unsupported public key type {type(public_key).__name__}")
    except (InvalidSignature, ValueError) as exc:
        if isinstance(exc, ValidationError):
            raise
        return False
    return True


def _verify_envelope(envelope: Envelope, public_key: Any) -> None:
    if not envelope.signatures:
        raise ValidationError("no signatures found")
    body = _b64decode_any(envelope.payload)
    message = pae(envelope.payload_type, body)
    verified = False
    for item in envelope.signatures:
        signature = _b64decode_any(item.get("sig", ""))
        if _verify(public_key, signature, message):
            verified = True
    if not verified:
        raise ValidationError("no valid signature found in envelope")


def _digest_strings(digest: Any) -> dict[str, str]:
    if digest is None:
        return {}
    if not isinstance(digest, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in digest.items()
    ):
        raise ValueError("digest must map algorithm names to strings")
    return digest


def parse_statement(payload: str) -> dict:
    """Decode a base64 in-toto statement and check the shape of its subjects."""
    try:
        raw = _b64decode_std(payload)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc
    try:
        statement = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"invalid statement JSON: {exc}") from exc
    if not isinstance(statement, dict):
        raise ValueError("statement must be a JSON object")
    subjects = statement.get("subject")
    if subjects is not None:
        if not isinstance(subjects, list):
            raise ValueError("statement subject must be a list")
        for subject in subjects:
            if not isinstance(subject, dict):
                raise ValueError("statement subject entries must be objects")
            _digest_strings(subject.get("digest"))
    return statement


def _material_digests(payload: str) -> list[str]:
    try:
        statement = parse_statement(payload)
        predicate = statement.get("predicate")
        if predicate is None:
            return []
        if not isinstance(predicate, dict):
            return []
        materials = predicate.get("materials")
        if materials is None:
            return []
        if not isinstance(materials, list):
            return []
        result = []
        for material in materials:
            if not isinstance(material, dict):
                return []
            result.extend(
                f"{alg}:{value}" for alg, value in _digest_strings(material.get("digest")).items()
            )
        return result
    except ValueError:
        return []


@dataclass
class _Hash:
    algorithm: Optional[str] = None
    value: Optional[str] = None


@dataclass
class _Content:
    envelope: Optional[str] = None
    hash: Optional[_Hash] = None
    payload_hash: Optional[_Hash] = None


@dataclass
class _Schema:
    public_key: Optional[bytes] = None
    content: Optional[_Content] = None


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


class IntotoV001Entry(Entry):
    """A DSSE envelope holding an in-toto statement, with the key that signed it."""

    API_VERSION = API_VERSION

    def __init__(
        self,
        spec: Optional[dict] = None,
        *,
        max_attestation_size: int = DEFAULT_MAX_ATTESTATION_SIZE,
    ) -> None:
        self.model: _Schema = _Schema()
        self.env = Envelope()
        self.max_attestation_size = max_attestation_size
        self._key_pem: Optional[bytes] = None
        self._public_key: Any = None
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
        """The payload digest and, for in-toto statements, content and subject digests.

        Raises ValueError when an in-toto payload is not a valid statement.
        """
        result = ["sha256:" + hashlib.sha256(self.env.payload.encode("utf-8")).hexdigest()]
        if self.env.payload_type != PAYLOAD_TYPE:
            logger.info("Unknown in_toto Statement Type: %s", self.env.payload_type)
            return result
        content = self.model.content
        if content is None or content.hash is None:
            logger.info("IntotoObj content or hash is nil")
            return result
        result.append(f"{content.hash.algorithm or ''}:{content.hash.value or ''}".lower())
        statement = parse_statement(self.env.payload)
        for subject in statement.get("subject") or []:
            result.extend(
                f"{alg}:{value}" for alg, value in _digest_strings(subject.get("digest")).items()
            )
        result.extend(_material_digests(self.env.payload))
        return result

    def unmarshal(self, proposed: dict) -> None:
        """Load and validate a proposed intoto entry."""
        if not isinstance(proposed, dict) or proposed.get("kind") != KIND:
            raise ValidationError("cannot unmarshal non Intoto v0.0.1 type")
        self.model = self._decode(proposed.get("spec") or {})
        self._validate_fields()
        key = self.model.public_key or b""
        self._public_key = parse_public_key(key)
        self._key_pem = key
        self.validate()

    def _validate_fields(self) -> None:
        if self.model.public_key is None:
            raise ValidationError("publicKey is required")
        content = self.model.content
        if content is None:
            raise ValidationError("content is required")
        for name, digest in (("hash", content.hash), ("payloadHash", content.payload_hash)):
            if digest is None:
                continue
            if digest.algorithm is None or digest.value is None:
                raise ValidationError(f"content.{name}: algorithm and value are required")
            if digest.algorithm not in _ALLOWED_ALGORITHMS:
                raise ValidationError(
                    f"content.{name}.algorithm must be one of {list(_ALLOWED_ALGORITHMS)}"
                )

    def validate(self) -> None:
        """Verify the envelope's signatures with the entry's public key, if present."""
        if self._public_key is None:
            raise ValidationError("missing public key")
        content = self.model.content
        envelope = content.envelope if content is not None else None
        if not envelope:
            return
        self.env = Envelope.from_json(envelope)
        _verify_envelope(self.env, self._public_key)

    def canonicalize(self) -> bytes:
        """Return the canonical JSON of the entry: key and content digests only."""
        if self._key_pem is None:
            raise ValueError("cannot canonicalize empty key")
        key_pem = _canonical_key(self._key_pem)
        content = self.model.content
        envelope = (content.envelope if content is not None else None) or ""
        canonical_content = _Content(
            hash=_Hash(algorithm=SHA256, value=hashlib.sha256(envelope.encode("utf-8")).hexdigest())
        )
        attestation = self.attestation()
        if attestation is not None:
            try:
                decoded = base64.b64decode(attestation, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError(f"decoding attestation: {exc}") from exc
            canonical_content.payload_hash = _Hash(
                algorithm=SHA256, value=hashlib.sha256(decoded).hexdigest()
            )
        canonical = _Schema(public_key=key_pem, content=canonical_content)
        document = {"apiVersion": API_VERSION, "kind": KIND, "spec": _to_json(canonical)}
        return json.dumps(document, separators=(",", ":"), sort_keys=True).encode("utf-8")

    def attestation(self) -> Optional[bytes]:
        """The base64 payload of the envelope, unless it exceeds the size limit."""
        storage_size = len(self.env.payload) // 4 * 3
        if storage_size > self.max_attestation_size:
            logger.info(
                "Skipping attestation storage, size %d is greater than max %d",
                storage_size,
                self.max_attestation_size,
            )
            return None
        return self.env.payload.encode("utf-8")

    def create_from_artifact_properties(self, props: ArtifactProperties) -> dict:
        """Build a proposed intoto entry from an envelope file and a public key."""
        artifact = props.artifact_bytes
        if artifact is None:
            if props.artifact_path is None:
                raise ValueError("path to artifact file must be specified")
            if len(urlsplit(props.artifact_path).scheme) > 1:
                raise ValueError("intoto envelopes cannot be fetched over HTTP(S)")
            try:
                artifact = Path(props.artifact_path).read_bytes()
            except OSError as exc:
                raise ValueError(f"error reading artifact file: {exc}") from exc
        public_key = props.public_key_bytes
        if public_key is None:
            if props.public_key_path is None:
                raise ValueError("public key must be provided to verify signature")
            try:
                public_key = Path(props.public_key_path).read_bytes()
            except OSError as exc:
                raise ValueError(f"error reading public key file: {exc}") from exc

        envelope = bytes(artifact).decode("utf-8", "surrogateescape")
        digest = hashlib.sha256(bytes(artifact)).hexdigest()
        spec = _Schema(
            public_key=bytes(public_key),
            content=_Content(envelope=envelope, hash=_Hash(algorithm=SHA256, value=digest)),
        )
        return {"apiVersion": self.api_version(), "kind": KIND, "spec": _to_json(spec)}