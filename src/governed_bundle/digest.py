# -*- encoding: utf-8 -*-
"""
Digest Engine - Canonical hashing of a bundle's file set and metadata.

The bundle digest is the binding target for approvals, so its byte stream
is fixed:

    for each entry sorted by path (UTF-8 byte order):
        <path> NUL <checksum> LF
    version=<version> LF
    governance_level=<level> LF
    created=<YYYY-MM-DDTHH:MM:SSZ> LF
    for each metadata key in sorted order:
        <key>=<value> LF

hashed with SHA-256 and rendered as ``sha256:<hex>``. Traversal order at
build time never influences the result.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Mapping, Tuple, Union

from .manifest import BundleManifest, FileEntry, format_timestamp, truncate_seconds

DIGEST_PREFIX = "sha256:"
CHUNK_SIZE = 1024 * 1024

EntryLike = Union[FileEntry, Tuple[str, str]]


def bytes_checksum(data: bytes) -> str:
    """SHA-256 hex digest of in-memory bytes."""
    return hashlib.sha256(data).hexdigest()


def file_checksum(path: Union[str, Path], chunk_size: int = CHUNK_SIZE) -> str:
    """SHA-256 hex digest of a file, streamed in chunks."""
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def _entry_pair(entry: EntryLike) -> Tuple[str, str]:
    if isinstance(entry, FileEntry):
        return entry.path, entry.checksum
    path, checksum = entry
    return path, checksum


def canonical_digest_input(
    entries: Iterable[EntryLike],
    version: str,
    governance_level: str,
    created: datetime,
    metadata: Mapping[str, str],
) -> bytes:
    """Build the exact byte stream that compute_digest() hashes."""
    pairs = sorted((_entry_pair(e) for e in entries), key=lambda p: p[0].encode("utf-8"))

    parts = []
    for path, checksum in pairs:
        parts.append(f"{path}\0{checksum}\n".encode("utf-8"))

    parts.append(f"version={version}\n".encode("utf-8"))
    parts.append(f"governance_level={governance_level}\n".encode("utf-8"))
    parts.append(f"created={format_timestamp(truncate_seconds(created))}\n".encode("utf-8"))
    for key in sorted(metadata, key=lambda k: k.encode("utf-8")):
        parts.append(f"{key}={metadata[key]}\n".encode("utf-8"))

    return b"".join(parts)


def compute_digest(
    entries: Iterable[EntryLike],
    version: str,
    governance_level: str,
    created: datetime,
    metadata: Mapping[str, str],
) -> str:
    """
    Compute the canonical bundle digest.

    Args:
        entries: FileEntry objects or (path, checksum) pairs, any order
        version: Bundle version
        governance_level: Governance level ("" if unset)
        created: Creation timestamp (truncated to whole seconds)
        metadata: Free-form manifest metadata

    Returns:
        "sha256:<hex>"
    """
    raw = canonical_digest_input(entries, version, governance_level, created, metadata)
    return DIGEST_PREFIX + hashlib.sha256(raw).hexdigest()


def manifest_digest(manifest: BundleManifest) -> str:
    """SHA-256 hex over the canonical JSON of the manifest minus integrity."""
    raw = json.dumps(
        manifest.to_dict(include_integrity=False),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def payload_digest(manifest_bytes: bytes, files: Dict[str, bytes]) -> str:
    """
    Digest of the immutable part of an archive: manifest plus file bytes.

    Approvals and the attestation are excluded so that appending them later
    leaves the payload digest unchanged.
    """
    h = hashlib.sha256()
    h.update(manifest_bytes)
    for path in sorted(files, key=lambda p: p.encode("utf-8")):
        h.update(f"{path}\0{bytes_checksum(files[path])}\n".encode("utf-8"))
    return DIGEST_PREFIX + h.hexdigest()
