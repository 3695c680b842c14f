"""Shard ranges of a sharded transparency log and virtual index mapping."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import yaml

from tlogkit.sharding import ShardingError

__all__ = [
    "LogRange",
    "LogRanges",
    "log_ranges_from_path",
    "load_log_ranges",
    "virtual_log_index",
]

logger = logging.getLogger(__name__)

_DECIMAL_RE = re.compile(r"[+-]?[0-9]+")


@dataclass
class LogRange:
    """One inactive shard: its tree ID, length and optional public key."""

    tree_id: int
    tree_length: int = 0
    encoded_public_key: str = ""
    decoded_public_key: str = ""


@dataclass
class LogRanges:
    """The inactive shards, in order, followed by the active tree."""

    inactive: list[LogRange] = field(default_factory=list)
    active: int = 0

    def resolve_virtual_index(self, index: int) -> tuple[int, int]:
        """Map a virtual log index to (tree ID, index within that tree)."""
        remaining = index
        for log_range in self.inactive:
            if remaining < log_range.tree_length:
                return log_range.tree_id, remaining
            remaining -= log_range.tree_length
        return self.active, remaining

    def no_inactive(self) -> bool:
        return not self.inactive

    def total_inactive_length(self) -> int:
        """Total length across all inactive shards."""
        return sum(r.tree_length for r in self.inactive)

    def append_inactive(self, log_range: LogRange) -> None:
        self.inactive.append(log_range)

    def public_key(self, active_public_key: str, tree_id: str) -> str:
        """Return the public key for a tree ID, defaulting to the active key."""
        if tree_id == "":
            return active_public_key
        if not _DECIMAL_RE.fullmatch(tree_id):
            raise ShardingError(f"invalid tree ID {tree_id!r}: not an integer")
        tid = int(tree_id)
        for log_range in self.inactive:
            if log_range.tree_id == tid:
                return log_range.decoded_public_key or active_public_key
        if tid == self.active:
            return active_public_key
        raise ShardingError(
            f"{tid} is not a valid tree ID and doesn't have an associated public key"
        )

    def __str__(self) -> str:
        parts = [f"{r.tree_id}={r.tree_length}" for r in self.inactive]
        parts.append(f"active={self.active}")
        return ",".join(parts)


def _int_field(item: dict, key: str) -> int:
    value = item.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ShardingError(f"{key} must be an integer, got {value!r}")
    return value


def _str_field(item: dict, key: str) -> str:
    value = item.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ShardingError(f"{key} must be a string, got {value!r}")
    return value


def log_ranges_from_path(path: str | Path) -> list[LogRange]:
    """Read a YAML list of shard ranges from a file."""
    contents = Path(path).read_text()
    if contents == "":
        logger.info("Sharding config file contents empty, skipping init of logRange map")
        return []
    try:
        data = yaml.safe_load(contents)
    except yaml.YAMLError as exc:
        raise ShardingError(f"parsing sharding config: {exc}") from exc
    if data is None:
        return []
    if not isinstance(data, list):
        raise ShardingError("sharding config must be a list of ranges")
    ranges = []
    for item in data:
        if not isinstance(item, dict):
            raise ShardingError(f"sharding config entry must be a mapping, got {item!r}")
        ranges.append(
            LogRange(
                tree_id=_int_field(item, "treeID"),
                tree_length=_int_field(item, "treeLength"),
                encoded_public_key=_str_field(item, "encodedPublicKey"),
            )
        )
    return ranges


def _update_range(
    log_range: LogRange, tree_size_lookup: Optional[Callable[[int], int]]
) -> LogRange:
    if log_range.tree_length == 0:
        if tree_size_lookup is None:
            raise ShardingError(
                f"getting signed log root for tree {log_range.tree_id}: no tree size lookup"
            )
        log_range.tree_length = int(tree_size_lookup(log_range.tree_id))
    if log_range.encoded_public_key:
        try:
            decoded = base64.b64decode(log_range.encoded_public_key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ShardingError(f"decoding public key: {exc}") from exc
        log_range.decoded_public_key = decoded.decode("utf-8", errors="surrogateescape")
    return log_range


def load_log_ranges(
    path: str | Path,
    tree_id: int,
    tree_size_lookup: Optional[Callable[[int], int]] = None,
) -> LogRanges:
    """Build LogRanges from a sharding config file and the active tree ID.

    ``tree_size_lookup`` is called with a tree ID to find the size of any
    range whose length is not given in the config.
    """
    if not path:
        logger.info("No config file specified, skipping init of logRange map")
        return LogRanges()
    if tree_id == 0:
        raise ShardingError(
            "non-zero tlog_id required when passing in shard config filepath; "
            "please set the active tree ID"
        )
    try:
        ranges = log_ranges_from_path(path)
    except (OSError, ShardingError) as exc:
        raise ShardingError(f"log ranges from path: {exc}") from exc
    updated = []
    for log_range in ranges:
        try:
            updated.append(_update_range(log_range, tree_size_lookup))
        except ShardingError as exc:
            raise ShardingError(
                f"updating range for tree id {log_range.tree_id}: {exc}"
            ) from exc
    result = LogRanges(inactive=updated, active=int(tree_id))
    logger.info("Ranges: %s", result)
    return result


def virtual_log_index(leaf_index: int, tree_id: int, ranges: LogRanges) -> int:
    """Return the virtual log index of a leaf in a tree, or -1 for an unknown tree."""
    if ranges.no_inactive():
        return leaf_index if ranges.active == tree_id else -1
    offset = 0
    for log_range in ranges.inactive:
        if log_range.tree_id == tree_id:
            return offset + leaf_index
        offset += log_range.tree_length
    if ranges.active == tree_id:
        return offset + leaf_index
    return -1