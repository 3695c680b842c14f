"""Entry identifiers made of a tree ID and a UUID, and their validation.

An entry ID is 80 hex characters: a 16-character tree ID naming the log
shard, followed by the 64-character UUID (the merkle leaf hash) of the
artifact within that shard.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

__all__ = [
    "TREE_ID_HEX_STRING_LEN",
    "UUID_HEX_STRING_LEN",
    "ENTRY_ID_HEX_STRING_LEN",
    "ShardingError",
    "PlainUUIDError",
    "EntryID",
    "create_entry_id_from_parts",
    "pad_to_tree_id_len",
    "get_uuid_from_id_string",
    "validate_uuid",
    "validate_tree_id",
    "validate_entry_id",
    "get_tree_id_from_id_string",
]

TREE_ID_HEX_STRING_LEN = 16
UUID_HEX_STRING_LEN = 64
ENTRY_ID_HEX_STRING_LEN = TREE_ID_HEX_STRING_LEN + UUID_HEX_STRING_LEN

_HEX_RE = re.compile(r"[0-9a-fA-F]*")
_SIGNED_HEX_RE = re.compile(r"[+-]?[0-9a-fA-F]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

ZERO_TREE_ID_MESSAGE = "0 is not a valid TreeID"


class ShardingError(ValueError):
    """Raised when a tree ID, UUID or entry ID is malformed."""


class PlainUUIDError(ShardingError):
    """Raised when a tree ID is requested from a plain UUID."""

    def __init__(self) -> None:
        super().__init__("cannot get treeID from plain UUID")


class _ZeroTreeIDError(ShardingError):
    def __init__(self) -> None:
        super().__init__(ZERO_TREE_ID_MESSAGE)


@dataclass(frozen=True)
class EntryID:
    """A tree ID (16 hex chars) paired with a UUID (64 hex chars)."""

    tree_id: str
    uuid: str

    def __str__(self) -> str:
        return self.tree_id + self.uuid


def create_entry_id_from_parts(tree_id: str, uuid: str) -> EntryID:
    """Build an EntryID, zero-padding a short tree ID to full length."""
    if len(tree_id) > TREE_ID_HEX_STRING_LEN:
        raise ShardingError(f"invalid treeid len: {len(tree_id)}")
    if len(uuid) != UUID_HEX_STRING_LEN:
        raise ShardingError(f"invalid uuid len: {len(uuid)}")
    padded = pad_to_tree_id_len(tree_id)
    validate_entry_id(padded + uuid)
    return EntryID(tree_id=padded, uuid=uuid)


def pad_to_tree_id_len(tree_id: str) -> str:
    """Left-pad a tree ID with zeros to the full tree ID length."""
    if len(tree_id) > TREE_ID_HEX_STRING_LEN:
        raise ShardingError(f"invalid treeID {tree_id}: too long")
    return tree_id.rjust(TREE_ID_HEX_STRING_LEN, "0")


def get_uuid_from_id_string(id_string: str) -> str:
    """Return the UUID from a UUID or entry ID string, validating it.

    An entry ID whose tree ID is zero still yields its UUID.
    """
    length = len(id_string)
    if length == UUID_HEX_STRING_LEN:
        validate_uuid(id_string)
        return id_string
    if length == ENTRY_ID_HEX_STRING_LEN:
        try:
            validate_entry_id(id_string)
        except _ZeroTreeIDError:
            pass
        return id_string[-UUID_HEX_STRING_LEN:]
    raise ShardingError(f"invalid ID len {length} for {id_string}")


def validate_uuid(value: str) -> None:
    """Check a UUID, or the UUID part of an entry ID, is valid hex."""
    length = len(value)
    if length == ENTRY_ID_HEX_STRING_LEN:
        validate_uuid(value[-UUID_HEX_STRING_LEN:])
        return
    if length == UUID_HEX_STRING_LEN:
        if not _HEX_RE.fullmatch(value):
            raise ShardingError(f"id {value} is not a valid hex string")
        return
    raise ShardingError(f"invalid ID len {length} for {value}")


def validate_tree_id(value: str) -> None:
    """Check a tree ID, or the tree ID part of an entry ID, is a non-zero int64 in hex."""
    length = len(value)
    if length == ENTRY_ID_HEX_STRING_LEN:
        validate_tree_id(value[:TREE_ID_HEX_STRING_LEN])
        return
    if length == TREE_ID_HEX_STRING_LEN:
        if not _SIGNED_HEX_RE.fullmatch(value):
            raise ShardingError(f"could not convert treeID {value} to int64: invalid syntax")
        number = int(value, 16)
        if not _INT64_MIN <= number <= _INT64_MAX:
            raise ShardingError(f"could not convert treeID {value} to int64: value out of range")
        if number == 0:
            raise _ZeroTreeIDError()
        return
    raise ShardingError(
        f"TreeID len expected to be {TREE_ID_HEX_STRING_LEN} but got {length}"
    )


def validate_entry_id(id_string: str) -> None:
    """Validate both the UUID and the tree ID of an entry ID."""
    validate_uuid(id_string)
    validate_tree_id(id_string)


def get_tree_id_from_id_string(id_string: str) -> str:
    """Return the tree ID from an entry ID string, validating the whole ID."""
    length = len(id_string)
    if length == UUID_HEX_STRING_LEN:
        raise PlainUUIDError()
    if length in (ENTRY_ID_HEX_STRING_LEN, TREE_ID_HEX_STRING_LEN):
        validate_entry_id(id_string)
        return id_string[:TREE_ID_HEX_STRING_LEN]
    raise ShardingError(f"invalid ID len {length} for {id_string}")