# -*- encoding: utf-8 -*-
"""
Bundle - In-memory aggregate of a loaded governance bundle.

A Bundle owns the manifest, the raw bytes of every file in the archive, any
approvals and at most one attestation. It is read-only for verify, gate,
diff and inspect; archive.py is the only writer.

Usage:
    from governed_bundle.archive import load_bundle

    bundle = load_bundle("release.gbundle.tgz")
    print(bundle.manifest.id, bundle.current_digest())
    print(bundle.info().to_dict())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .approval import Approval
from .attestation.statement import Attestation
from .digest import bytes_checksum, compute_digest, payload_digest
from .errors import VerificationError
from .manifest import BundleManifest, format_timestamp


# ---------------------------------------------------------------------------
# ApprovalStatus
# ---------------------------------------------------------------------------


@dataclass
class ApprovalFailure:
    """An approval that did not verify, and why."""
    approval: Approval
    error: VerificationError

    @property
    def code(self) -> str:
        return self.error.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.approval.role,
            "user": self.approval.user,
            "code": self.code,
            "message": self.error.message,
        }


@dataclass
class ApprovalStatus:
    """Progress of a bundle towards its required approvals."""
    required_roles: List[str] = field(default_factory=list)
    valid: List[Approval] = field(default_factory=list)
    failures: List[ApprovalFailure] = field(default_factory=list)

    @property
    def approved_roles(self) -> List[str]:
        return sorted({a.role for a in self.valid})

    @property
    def approved_by(self) -> List[str]:
        return sorted({a.user for a in self.valid})

    @property
    def missing_roles(self) -> List[str]:
        approved = set(self.approved_roles)
        return sorted({r for r in self.required_roles if r not in approved})

    # Alias matching how operators talk about it
    pending_roles = missing_roles

    @property
    def completed(self) -> int:
        return len(self.required_roles) - len(self.missing_roles)

    @property
    def total(self) -> int:
        return len(self.required_roles)

    @property
    def complete(self) -> bool:
        return not self.missing_roles

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required_roles": list(self.required_roles),
            "completed": self.completed,
            "total": self.total,
            "approved_by": self.approved_by,
            "pending_roles": self.missing_roles,
            "complete": self.complete,
            "failures": [f.to_dict() for f in self.failures],
        }


# ---------------------------------------------------------------------------
# BundleInfo
# ---------------------------------------------------------------------------


@dataclass
class BundleInfo:
    """Summary of a bundle read from its manifest alone."""
    id: str
    version: str
    schema: str
    created: datetime
    integrity_digest: str
    governance_level: str = ""
    file_count: int = 0
    required_approvals: List[str] = field(default_factory=list)
    approvals: List[Tuple[str, str]] = field(default_factory=list)
    has_attestation: bool = False
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "schema": self.schema,
            "created": format_timestamp(self.created),
            "integrity_digest": self.integrity_digest,
            "governance_level": self.governance_level,
            "file_count": self.file_count,
            "required_approvals": list(self.required_approvals),
            "approvals": [f"{role}:{user}" for role, user in self.approvals],
            "has_attestation": self.has_attestation,
            "size": self.size,
        }


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------


@dataclass
class Bundle:
    """A loaded bundle: manifest, file bytes, approvals, attestation."""
    manifest: BundleManifest
    files: Dict[str, bytes] = field(default_factory=dict)
    approvals: List[Approval] = field(default_factory=list)
    attestation: Optional[Attestation] = None
    path: Optional[Path] = None
    manifest_bytes: bytes = b""

    def __post_init__(self):
        if not self.manifest_bytes:
            self.manifest_bytes = self.manifest.to_json().encode("utf-8")

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def version(self) -> str:
        return self.manifest.version

    @property
    def recorded_digest(self) -> str:
        """Digest the manifest claims, as written at build time."""
        return self.manifest.integrity.digest

    def checksums(self) -> Dict[str, str]:
        """path -> SHA-256 hex of the bytes actually present."""
        return {path: bytes_checksum(data) for path, data in self.files.items()}

    def current_digest(self) -> str:
        """
        Digest recomputed from the file bytes actually present.

        Approvals are always checked against this value, never against
        ``recorded_digest`` or the digest an approval claims.
        """
        m = self.manifest
        return compute_digest(
            self.checksums().items(),
            m.version,
            m.governance_level,
            m.created,
            m.metadata,
        )

    def payload_digest(self) -> str:
        return payload_digest(self.manifest_bytes, self.files)

    def approvals_for(self, role: str) -> List[Approval]:
        return [a for a in self.approvals if a.role == role]

    def get_approval(self, role: str, user: str) -> Optional[Approval]:
        for approval in self.approvals:
            if approval.identity == (role, user):
                return approval
        return None

    def info(self, size: int = 0) -> BundleInfo:
        m = self.manifest
        if not size and self.path is not None and self.path.exists():
            size = self.path.stat().st_size
        return BundleInfo(
            id=m.id,
            version=m.version,
            schema=m.schema,
            created=m.created,
            integrity_digest=m.integrity.digest,
            governance_level=m.governance_level,
            file_count=len(m.files),
            required_approvals=list(m.required_approvals),
            approvals=sorted(a.identity for a in self.approvals),
            has_attestation=self.attestation is not None,
            size=size,
        )
