# -*- encoding: utf-8 -*-
"""
Bundle Manifest - Identity, versioning and integrity record of a bundle.

The manifest is written once at build time and is terminal for file
content. Approvals and attestations live beside it in the archive and never
modify it.

Serialized as JSON (sorted keys) under ``manifest.json`` at the archive root.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import INVALID_MANIFEST, UNSUPPORTED_SCHEMA

BUNDLE_SCHEMA = "governed.bundle/v1"
SUPPORTED_SCHEMAS = (BUNDLE_SCHEMA,)
DEFAULT_ALGORITHM = "sha256"
GOVERNANCE_LEVELS = ("L1", "L2", "L3", "L4")

RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_timestamp(dt: datetime) -> str:
    """Render a timestamp as RFC 3339 UTC with whole seconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(RFC3339_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp (``Z`` or offset suffix) to aware UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def truncate_seconds(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0)


@dataclass
class ManifestProblem:
    """A structural problem found by BundleManifest.validate()."""
    code: str
    message: str
    field: str = ""


@dataclass
class FileEntry:
    """A file in the bundle with its integrity information."""
    path: str
    size: int
    checksum: str  # SHA-256 hex of the file bytes

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "size": self.size, "checksum": self.checksum}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FileEntry:
        return cls(
            path=data["path"],
            size=int(data.get("size", 0)),
            checksum=data["checksum"],
        )


@dataclass
class IntegrityInfo:
    """Cryptographic integrity information for the bundle."""
    algorithm: str = DEFAULT_ALGORITHM
    digest: str = ""           # "sha256:<hex>", the approval binding target
    manifest_digest: str = ""  # hex digest of the manifest minus this block

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "digest": self.digest,
            "manifest_digest": self.manifest_digest,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> IntegrityInfo:
        return cls(
            algorithm=data.get("algorithm", DEFAULT_ALGORITHM),
            digest=data.get("digest", ""),
            manifest_digest=data.get("manifest_digest", ""),
        )


@dataclass
class BundleManifest:
    """Bundle metadata and integrity record."""
    id: str
    version: str
    created: datetime
    schema: str = BUNDLE_SCHEMA
    governance_level: str = ""
    integrity: IntegrityInfo = field(default_factory=IntegrityInfo)
    files: List[FileEntry] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    required_approvals: List[str] = field(default_factory=list)
    description: str = ""

    def get_file(self, path: str) -> Optional[FileEntry]:
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def has_file(self, path: str) -> bool:
        return self.get_file(path) is not None

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    def validate(self) -> List[ManifestProblem]:
        """
        Check required fields and schema support.

        Returns a list of problems; empty means structurally valid.
        """
        problems: List[ManifestProblem] = []
        if not self.schema:
            problems.append(ManifestProblem(INVALID_MANIFEST, "manifest schema is required", "schema"))
        elif self.schema not in SUPPORTED_SCHEMAS:
            problems.append(ManifestProblem(
                UNSUPPORTED_SCHEMA, f"unsupported bundle schema: {self.schema}", "schema",
            ))
        if not self.id:
            problems.append(ManifestProblem(INVALID_MANIFEST, "bundle ID is required", "id"))
        if not self.version:
            problems.append(ManifestProblem(INVALID_MANIFEST, "bundle version is required", "version"))
        if self.governance_level and self.governance_level not in GOVERNANCE_LEVELS:
            problems.append(ManifestProblem(
                INVALID_MANIFEST,
                f"unknown governance level: {self.governance_level}",
                "governance_level",
            ))
        if not self.integrity.algorithm:
            problems.append(ManifestProblem(
                INVALID_MANIFEST, "integrity algorithm is required", "integrity.algorithm",
            ))
        if not self.integrity.digest:
            problems.append(ManifestProblem(
                INVALID_MANIFEST, "integrity digest is required", "integrity.digest",
            ))
        if not self.files:
            problems.append(ManifestProblem(
                INVALID_MANIFEST, "bundle must contain at least one file", "files",
            ))
        seen = set()
        for entry in self.files:
            if entry.path in seen:
                problems.append(ManifestProblem(
                    INVALID_MANIFEST, f"duplicate file entry: {entry.path}", entry.path,
                ))
            seen.add(entry.path)
        return problems

    def to_dict(self, include_integrity: bool = True) -> Dict[str, Any]:
        """Serialize for storage. Files are always emitted in path order."""
        data: Dict[str, Any] = {
            "schema": self.schema,
            "id": self.id,
            "version": self.version,
            "created": format_timestamp(self.created),
            "governance_level": self.governance_level,
            "files": [
                f.to_dict()
                for f in sorted(self.files, key=lambda e: e.path.encode("utf-8"))
            ],
            "metadata": dict(self.metadata),
            "required_approvals": list(self.required_approvals),
            "description": self.description,
        }
        if include_integrity:
            data["integrity"] = self.integrity.to_dict()
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BundleManifest:
        created_raw = data.get("created")
        if not created_raw:
            raise ValueError("manifest is missing 'created'")
        return cls(
            id=data.get("id", ""),
            version=data.get("version", ""),
            created=parse_timestamp(created_raw),
            schema=data.get("schema", ""),
            governance_level=data.get("governance_level", ""),
            integrity=IntegrityInfo.from_dict(data.get("integrity", {})),
            files=[FileEntry.from_dict(f) for f in data.get("files", [])],
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            required_approvals=list(data.get("required_approvals") or []),
            description=data.get("description", ""),
        )

    @classmethod
    def from_json(cls, text: str) -> BundleManifest:
        return cls.from_dict(json.loads(text))
