"""Helm chart provenance files: OpenPGP clearsigned chart checksums."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional, Union

import yaml

__all__ = [
    "ProvenanceError",
    "ClearsignBlock",
    "SumCollection",
    "Provenance",
    "decode_clearsign",
    "parse_provenance",
]

_BEGIN_MESSAGE = b"-----BEGIN PGP SIGNED MESSAGE-----"
_BEGIN_SIGNATURE = b"-----BEGIN PGP SIGNATURE-----"
_END_SIGNATURE = b"-----END PGP SIGNATURE-----"
_DASH_ESCAPE = b"- "
_CRC24_INIT = 0xB704CE
_CRC24_POLY = 0x1864CFB


class ProvenanceError(ValueError):
    """Raised when a provenance file cannot be decoded or lacks a chart hash."""


@dataclass
class ClearsignBlock:
    """A decoded clearsigned message.

    ``signed_bytes`` is the canonical text the signature covers (CRLF line
    endings, trailing whitespace removed); ``plaintext`` is the same text
    with LF endings. ``armored_signature`` is the decoded signature packet.
    """

    headers: dict[str, list[str]]
    plaintext: bytes
    signed_bytes: bytes
    armored_signature: bytes
    armor_headers: dict[str, str] = field(default_factory=dict)
    rest: bytes = b""


@dataclass
class SumCollection:
    """Checksums of the chart files and images."""

    files: Optional[dict[str, str]] = None
    images: Optional[dict[str, str]] = None


@dataclass
class Provenance:
    """A parsed provenance file."""

    sum_collection: Optional[SumCollection] = None
    block: Optional[ClearsignBlock] = None

    def chart_algorithm_hash(self) -> tuple[str, str]:
        """Return (algorithm, hash) of the chart archive."""
        if self.sum_collection is None or self.sum_collection.files is None:
            raise ProvenanceError("Unable to locate chart hash")
        for value in self.sum_collection.files.values():
            parts = value.split(":")
            if len(parts) != 2:
                raise ProvenanceError("Invalid hash found in Provenance file")
            return parts[0], parts[1]
        raise ProvenanceError("No checksums found")


def _get_line(data: bytes, pos: int) -> tuple[bytes, int]:
    end = data.find(b"\n", pos)
    if end < 0:
        return data[pos:], len(data)
    line_end = end - 1 if end > pos and data[end - 1 : end] == b"\r" else end
    return data[pos:line_end], end + 1


def _crc24(data: bytes) -> int:
    crc = _CRC24_INIT
    for byte in data:
        crc ^= byte << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= _CRC24_POLY
    return crc & 0xFFFFFF


def _decode_armor(data: bytes) -> tuple[bytes, dict[str, str], bytes]:
    line, pos = _get_line(data, 0)
    if line.strip() != _BEGIN_SIGNATURE:
        raise ProvenanceError("armor: missing signature header")
    headers: dict[str, str] = {}
    while True:
        if pos >= len(data):
            raise ProvenanceError("armor: unexpected end of data in headers")
        line, pos = _get_line(data, pos)
        line = line.strip()
        if not line:
            break
        key, sep, value = line.partition(b":")
        if not sep:
            raise ProvenanceError("armor: malformed header line")
        headers[key.strip().decode("utf-8", "replace")] = value.strip().decode(
            "utf-8", "replace"
        )
    chunks: list[bytes] = []
    checksum: Optional[int] = None
    while True:
        if pos >= len(data):
            raise ProvenanceError("armor: unexpected end of data in body")
        line, pos = _get_line(data, pos)
        line = line.strip()
        if len(line) == 5 and line.startswith(b"="):
            try:
                checksum = int.from_bytes(base64.b64decode(line[1:], validate=True), "big")
            except (binascii.Error, ValueError) as exc:
                raise ProvenanceError(f"armor: invalid checksum: {exc}") from exc
            if pos >= len(data):
                raise ProvenanceError("armor: missing trailer")
            line, pos = _get_line(data, pos)
            if line.strip() != _END_SIGNATURE:
                raise ProvenanceError("armor: invalid trailer")
            break
        if line == _END_SIGNATURE:
            break
        chunks.append(line)
    try:
        body = base64.b64decode(b"".join(chunks), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProvenanceError(f"armor: invalid base64 body: {exc}") from exc
    if checksum is not None and _crc24(body) != checksum:
        raise ProvenanceError("armor: checksum mismatch")
    return body, headers, data[pos:]


def decode_clearsign(data: bytes) -> ClearsignBlock:
    """Decode the first OpenPGP clearsigned message found in ``data``."""
    start = data.find(_BEGIN_MESSAGE)
    if start < 0:
        raise ProvenanceError("no clearsigned message found")
    line, pos = _get_line(data, start + len(_BEGIN_MESSAGE))
    if line.strip():
        raise ProvenanceError("malformed clearsign start line")

    headers: dict[str, list[str]] = {}
    while True:
        line, pos = _get_line(data, pos)
        if pos >= len(data):
            raise ProvenanceError("unexpected end of data in clearsign headers")
        if not line:
            break
        key, sep, value = line.partition(b":")
        if not sep or key.strip() != b"Hash":
            raise ProvenanceError("invalid clearsign header")
        headers.setdefault("Hash", []).append(value.strip().decode("utf-8", "replace"))

    signed_lines: list[bytes] = []
    while True:
        if pos >= len(data):
            raise ProvenanceError("no armored signature found")
        line_start = pos
        line, pos = _get_line(data, pos)
        if line == _BEGIN_SIGNATURE:
            signature_start = line_start
            break
        if line.startswith(_DASH_ESCAPE):
            line = line[len(_DASH_ESCAPE) :]
        signed_lines.append(line.rstrip(b" \t"))

    signature, armor_headers, rest = _decode_armor(data[signature_start:])
    return ClearsignBlock(
        headers=headers,
        plaintext=b"".join(line + b"\n" for line in signed_lines),
        signed_bytes=b"\r\n".join(signed_lines),
        armored_signature=signature,
        armor_headers=armor_headers,
        rest=rest,
    )


def _string_map(value: Any, name: str) -> Optional[dict[str, str]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ProvenanceError(f"{name} must be a mapping")
    result = {}
    for key, item in value.items():
        if not isinstance(item, str):
            raise ProvenanceError(f"{name}.{key} must be a string")
        result[str(key)] = item
    return result


def _parse_message_block(plaintext: bytes) -> SumCollection:
    parts = plaintext.split(b"\n...\n")
    if len(parts) < 2:
        raise ProvenanceError("message block must have at least two parts")
    try:
        document = yaml.safe_load(parts[1])
    except yaml.YAMLError as exc:
        raise ProvenanceError(f"Error occurred parsing SumCollection: {exc}") from exc
    if document is None:
        return SumCollection()
    if not isinstance(document, dict):
        raise ProvenanceError("Error occurred parsing SumCollection: not a mapping")
    try:
        return SumCollection(
            files=_string_map(document.get("files"), "files"),
            images=_string_map(document.get("images"), "images"),
        )
    except ProvenanceError as exc:
        raise ProvenanceError(f"Error occurred parsing SumCollection: {exc}") from exc


def parse_provenance(data: Union[bytes, bytearray, BinaryIO]) -> Provenance:
    """Parse a provenance file from bytes or a binary stream."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        content = bytes(data)
    else:
        try:
            content = data.read()
        except OSError as exc:
            raise ProvenanceError("Failed to read from buffer") from exc
    if not content:
        raise ProvenanceError("Provenance file contains no content")
    try:
        block = decode_clearsign(content)
    except ProvenanceError as exc:
        raise ProvenanceError(f"Unable to decode provenance file: {exc}") from exc
    try:
        sums = _parse_message_block(block.plaintext)
    except ProvenanceError as exc:
        raise ProvenanceError(f"Error occurred parsing message block: {exc}") from exc
    return Provenance(sum_collection=sums, block=block)