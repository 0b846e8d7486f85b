# -*- encoding: utf-8 -*-
"""
Bundle Diff - Structural comparison of two loaded bundles.

Files are compared by path and checksum, approvals by (role, user)
identity. A re-signed approval for an unchanged (role, user) pair is
neither added nor removed.

Usage:
    from governed_bundle.archive import load_bundle
    from governed_bundle.diff import diff_bundles

    result = diff_bundles(load_bundle("v1.gbundle.tgz"), load_bundle("v2.gbundle.tgz"))
    if result.has_changes():
        print(result.summary())
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

from .attestation.statement import Attestation
from .bundle import Bundle


@dataclass
class FileChange:
    """A path present in both bundles with different content."""
    path: str
    old_checksum: str
    new_checksum: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "old_checksum": self.old_checksum, "new_checksum": self.new_checksum}


@dataclass
class DiffResult:
    """Differences going from bundle A to bundle B."""
    files_added: List[str] = field(default_factory=list)
    files_removed: List[str] = field(default_factory=list)
    files_modified: List[FileChange] = field(default_factory=list)
    approvals_added: List[Tuple[str, str]] = field(default_factory=list)
    approvals_removed: List[Tuple[str, str]] = field(default_factory=list)
    attestation_changed: bool = False
    metadata_changed: bool = False
    metadata_changes: Dict[str, Tuple[str, str]] = field(default_factory=dict)

    def has_changes(self) -> bool:
        return bool(
            self.files_added
            or self.files_removed
            or self.files_modified
            or self.approvals_added
            or self.approvals_removed
            or self.attestation_changed
            or self.metadata_changed
        )

    def summary(self) -> str:
        if not self.has_changes():
            return "No differences found"
        parts = []
        if self.files_added:
            parts.append(f"{len(self.files_added)} file(s) added")
        if self.files_removed:
            parts.append(f"{len(self.files_removed)} file(s) removed")
        if self.files_modified:
            parts.append(f"{len(self.files_modified)} file(s) modified")
        if self.approvals_added:
            parts.append(f"{len(self.approvals_added)} approval(s) added")
        if self.approvals_removed:
            parts.append(f"{len(self.approvals_removed)} approval(s) removed")
        if self.attestation_changed:
            parts.append("attestation changed")
        if self.metadata_changed:
            parts.append("metadata changed")
        return ", ".join(parts)

    def version_change(self) -> Optional[str]:
        """'upgrade', 'downgrade' or 'changed' when the version differs."""
        if "version" not in self.metadata_changes:
            return None
        old, new = self.metadata_changes["version"]
        try:
            old_v, new_v = Version(old), Version(new)
        except InvalidVersion:
            return "changed"
        if new_v > old_v:
            return "upgrade"
        if new_v < old_v:
            return "downgrade"
        # Equal after normalization, e.g. "1.0" vs "1.0.0"
        return "changed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files_added": list(self.files_added),
            "files_removed": list(self.files_removed),
            "files_modified": [c.to_dict() for c in self.files_modified],
            "approvals_added": [f"{r}:{u}" for r, u in self.approvals_added],
            "approvals_removed": [f"{r}:{u}" for r, u in self.approvals_removed],
            "attestation_changed": self.attestation_changed,
            "metadata_changed": self.metadata_changed,
            "metadata_changes": {k: {"old": o, "new": n} for k, (o, n) in self.metadata_changes.items()},
        }


def _attestation_changed(a: Optional[Attestation], b: Optional[Attestation]) -> bool:
    if a is None and b is None:
        return False
    if (a is None) != (b is None):
        return True
    return (a.signature, a.signed_at, a.plan_hash) != (b.signature, b.signed_at, b.plan_hash)


def diff_bundles(a: Bundle, b: Bundle) -> DiffResult:
    """Compare bundle ``a`` (old) with bundle ``b`` (new)."""
    result = DiffResult()

    old = {f.path: f.checksum for f in a.manifest.files}
    new = {f.path: f.checksum for f in b.manifest.files}
    result.files_added = sorted(set(new) - set(old))
    result.files_removed = sorted(set(old) - set(new))
    result.files_modified = [
        FileChange(path, old[path], new[path])
        for path in sorted(set(old) & set(new))
        if old[path] != new[path]
    ]

    old_ids = {x.identity for x in a.approvals}
    new_ids = {x.identity for x in b.approvals}
    result.approvals_added = sorted(new_ids - old_ids)
    result.approvals_removed = sorted(old_ids - new_ids)

    result.attestation_changed = _attestation_changed(a.attestation, b.attestation)

    ma, mb = a.manifest, b.manifest
    for name in ("id", "version", "governance_level", "description"):
        before, after = getattr(ma, name), getattr(mb, name)
        if before != after:
            result.metadata_changes[name] = (before, after)
    for key in sorted(set(ma.metadata) | set(mb.metadata)):
        before, after = ma.metadata.get(key, ""), mb.metadata.get(key, "")
        if key not in ma.metadata or key not in mb.metadata or before != after:
            result.metadata_changes[f"metadata.{key}"] = (before, after)
    result.metadata_changed = bool(result.metadata_changes)

    return result
