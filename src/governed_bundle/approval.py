# -*- encoding: utf-8 -*-
"""
Approvals - Role-scoped sign-off bound to a bundle digest.

An approval states that ``user`` acting as ``role`` reviewed the bundle whose
integrity digest was ``bundle_digest`` at ``signed_at``. The signature covers
the canonical message:

    "<BundleDigest>|<Role>|<User>|<SignedAt:RFC3339>|<Comment>"

Field order and separators never vary. Verifiers rebuild this message with
the bundle's *current* digest, not ``bundle_digest``, so an approval cannot
be replayed onto different content.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .errors import INVALID_SIGNATURE, UNSUPPORTED_SIGNATURE_TYPE
from .manifest import ManifestProblem, format_timestamp, parse_timestamp, truncate_seconds


class SignatureType(str, Enum):
    """Supported approval signature formats."""
    SSH = "ssh"
    GPG = "gpg"


def canonical_message(
    bundle_digest: str,
    role: str,
    user: str,
    signed_at: datetime,
    comment: str,
) -> bytes:
    """Bytes that an approval signature covers."""
    return "|".join([
        bundle_digest,
        role,
        user,
        format_timestamp(signed_at),
        comment,
    ]).encode("utf-8")


@dataclass
class Approval:
    """A team member's signed approval of a bundle."""
    bundle_digest: str
    role: str
    user: str
    signature_type: str
    signature: str
    public_key_fingerprint: str
    signed_at: datetime
    comment: str = ""
    public_key: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.signed_at = truncate_seconds(self.signed_at)

    @property
    def identity(self) -> tuple:
        """(role, user) pair used to compare approvals across bundles."""
        return (self.role, self.user)

    def message_for(self, bundle_digest: str) -> bytes:
        """Canonical message for this approval bound to ``bundle_digest``."""
        return canonical_message(bundle_digest, self.role, self.user, self.signed_at, self.comment)

    def validate(self) -> List[ManifestProblem]:
        """Structural checks. Cryptographic checks live in signing.verifier."""
        problems = []
        for name in ("role", "user", "signature", "signature_type"):
            if not getattr(self, name):
                problems.append(ManifestProblem(
                    INVALID_SIGNATURE, f"approval {name} is required", name,
                ))
        if self.signature_type and self.signature_type not in {t.value for t in SignatureType}:
            problems.append(ManifestProblem(
                UNSUPPORTED_SIGNATURE_TYPE,
                f"unsupported signature type: {self.signature_type}",
                "signature_type",
            ))
        return problems

    def is_expired(self, max_age: Optional[timedelta], now: Optional[datetime] = None) -> bool:
        if not max_age:
            return False
        now = now or datetime.now(timezone.utc)
        return now - self.signed_at > max_age

    def matches_fingerprint(self, fingerprint: str) -> bool:
        return bool(self.public_key_fingerprint) and self.public_key_fingerprint == fingerprint

    @property
    def document_name(self) -> str:
        """
        File name used when the approval is stored beside a bundle.

        Role and user are percent-encoded with "-" escaped too, so the single
        unescaped "-" separates them and distinct pairs never share a name.
        """
        return f"{_encode(self.role)}-{_encode(self.user)}.json"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundle_digest": self.bundle_digest,
            "role": self.role,
            "user": self.user,
            "comment": self.comment,
            "signature_type": self.signature_type,
            "signature": self.signature,
            "public_key_fingerprint": self.public_key_fingerprint,
            "public_key": self.public_key,
            "signed_at": format_timestamp(self.signed_at),
            "metadata": dict(self.metadata),
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Approval:
        return cls(
            bundle_digest=data.get("bundle_digest", ""),
            role=data.get("role", ""),
            user=data.get("user", ""),
            comment=data.get("comment", ""),
            signature_type=data.get("signature_type", ""),
            signature=data.get("signature", ""),
            public_key_fingerprint=data.get("public_key_fingerprint", ""),
            public_key=data.get("public_key", ""),
            signed_at=parse_timestamp(data["signed_at"]),
            metadata=dict(data.get("metadata") or {}),
        )

    @classmethod
    def from_json(cls, text: str) -> Approval:
        return cls.from_dict(json.loads(text))


def _encode(value: str) -> str:
    return quote(value, safe="").replace("-", "%2D")
