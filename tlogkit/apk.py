"""Alpine package (APK) parsing and signature verification.

An APK is three gzip members concatenated: ``signature.tar.gz``,
``control.tar.gz`` and ``data.tar.gz``. The signature covers the SHA-1
digest of the compressed control member, and ``.PKGINFO`` inside the
control member records the SHA-256 digest of the compressed data member.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import re
import tarfile
import zlib
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from tlogkit.entries import ValidationError, parse_public_key

__all__ = ["ApkError", "Package", "parse_package", "parse_pkginfo"]

_PEM_RE = re.compile(rb"-----BEGIN ([^\r\n-]*)-----\r?\n(.*?)-----END \1-----", re.S)
_QUOTES = ('"', "'", "`")
_DEFAULT_SECTIONS = ("", "DEFAULT")


class ApkError(ValueError):
    """Raised when an Alpine package is malformed or does not verify."""


@dataclass
class Package:
    """The parts of an Alpine package needed to verify and index it."""

    pkginfo: dict[str, str] = field(default_factory=dict)
    signature: Optional[bytes] = None
    datahash: bytes = b""
    control_sha1_digest: Optional[bytes] = field(default=None, repr=False)

    def verify_signature(self, public_key: Any) -> None:
        """Verify the package signature; raise ApkError if it does not verify.

        ``public_key`` is a key object or PEM-encoded key or certificate.
        """
        if self.signature is None:
            raise ApkError("no signature in alpine package object")
        if self.control_sha1_digest is None:
            raise ApkError("no digest value for data.tar.gz known")
        key = public_key
        if isinstance(key, (bytes, bytearray, str)):
            try:
                key = parse_public_key(bytes(key) if not isinstance(key, str) else key.encode())
            except ValidationError as exc:
                raise ApkError(str(exc)) from exc
        algorithm = Prehashed(hashes.SHA1())
        try:
            if isinstance(key, rsa.RSAPublicKey):
                key.verify(self.signature, self.control_sha1_digest, padding.PKCS1v15(), algorithm)
            elif isinstance(key, ec.EllipticCurvePublicKey):
                key.verify(self.signature, self.control_sha1_digest, ec.ECDSA(algorithm))
            else:
                raise ApkError(f"unsupported public key type {type(key).__name__}")
        except (InvalidSignature, ValueError) as exc:
            if isinstance(exc, ApkError):
                raise
            raise ApkError("invalid signature for alpine package") from exc


def _pem_body(data: bytes) -> Optional[bytes]:
    match = _PEM_RE.search(data)
    if match is None:
        return None
    lines = match.group(2).splitlines()
    if lines and b":" in lines[0]:
        while lines and lines[0].strip():
            lines.pop(0)
    try:
        return base64.b64decode(b"".join(line.strip() for line in lines), validate=True)
    except (binascii.Error, ValueError):
        return None


def _split_gzip_member(data: bytes, what: str) -> tuple[bytes, bytes, bytes]:
    """Return (decompressed content, raw member bytes, remaining bytes)."""
    decompressor = zlib.decompressobj(wbits=31)
    try:
        content = decompressor.decompress(data) + decompressor.flush()
    except zlib.error as exc:
        raise ApkError(f"reading {what}: {exc}") from exc
    if not decompressor.eof:
        raise ApkError(f"reading {what}: unexpected EOF")
    rest = decompressor.unused_data
    return content, data[: len(data) - len(rest)], rest


def _tar_entries(content: bytes) -> list[tuple[str, bytes]]:
    if not content:
        return []
    entries = []
    try:
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:") as archive:
            for member in archive:
                body = b""
                if member.isfile():
                    handle = archive.extractfile(member)
                    if handle is not None:
                        body = handle.read()
                entries.append((member.name, body))
    except (tarfile.TarError, OSError) as exc:
        raise ApkError(f"getting next entry in tar archive: {exc}") from exc
    return entries


def _read_all(reader: Union[bytes, bytearray, BinaryIO]) -> bytes:
    if isinstance(reader, (bytes, bytearray, memoryview)):
        return bytes(reader)
    return reader.read()


def parse_package(reader: Union[bytes, bytearray, BinaryIO]) -> Package:
    """Parse an APK from bytes or a binary stream, checking the data hash."""
    data = _read_all(reader)
    if not data:
        raise ApkError("create gzip reader: empty input")
    signature_tar, _, rest = _split_gzip_member(data, "signature.tar.gz")
    if rest:
        control_tar, control_raw, data_raw = _split_gzip_member(rest, "control.tar.gz")
    else:
        control_tar, control_raw, data_raw = b"", b"", b""
    control_digest = hashlib.sha1(control_raw).digest()  # noqa: S324 - fixed by the format

    signature: Optional[bytes] = None
    for name, body in _tar_entries(signature_tar):
        if name.startswith(".SIGN") and signature is None:
            decoded = _pem_body(body)
            signature = body if decoded is None else decoded
    if signature is None:
        raise ApkError("no signature detected in alpine package")

    pkginfo: Optional[dict[str, str]] = None
    datahash = b""
    for name, body in _tar_entries(control_tar):
        if name == ".PKGINFO":
            try:
                pkginfo = parse_pkginfo(body)
            except ApkError as exc:
                raise ApkError(f"parsing .PKGINFO: {exc}") from exc
            try:
                datahash = binascii.unhexlify(pkginfo.get("datahash", ""))
            except (binascii.Error, ValueError) as exc:
                raise ApkError(f"parsing datahash: {exc}") from exc
    if pkginfo is None:
        raise ApkError(".PKGINFO file was not located")

    computed = hashlib.sha256(data_raw).digest()
    if computed != datahash:
        raise ApkError(
            f"checksum for data.tar.gz ({computed.hex()}) does not match value "
            f"from .PKGINFO ({datahash.hex()})"
        )
    return Package(
        pkginfo=pkginfo,
        signature=signature,
        datahash=datahash,
        control_sha1_digest=control_digest,
    )


def _unquote_value(value: str) -> str:
    for quote in _QUOTES:
        if len(value) >= 2 and value.startswith(quote) and value.endswith(quote):
            return value[1:-1]
    for position, char in enumerate(value):
        if char in "#;":
            return value[:position].strip()
    return value


def parse_pkginfo(content: Union[bytes, str]) -> dict[str, str]:
    """Parse ``key = value`` lines of a .PKGINFO file; later keys win."""
    text = content.decode("utf-8-sig") if isinstance(content, bytes) else content
    result: dict[str, str] = {}
    section = ""
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line[0] in "#;":
            continue
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip()
            continue
        positions = [i for i in (line.find("="), line.find(":")) if i >= 0]
        if not positions:
            raise ApkError(f"key-value delimiter not found on line {number}: {raw}")
        split = min(positions)
        key = line[:split].strip()
        if not key:
            raise ApkError(f"empty key on line {number}")
        if section in _DEFAULT_SECTIONS:
            result[key] = _unquote_value(line[split + 1 :].strip())
    return result