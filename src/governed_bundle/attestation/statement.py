# -*- encoding: utf-8 -*-
"""
Attestation Statement - Third-party-verifiable record of how a bundle was made.

An attestation is a side-car: it never participates in the bundle digest and
a bundle stays valid without one. It snapshots the bundle at generation time
through two hashes:

- plan_hash: the bundle integrity digest (what was meant to be built)
- output_hash: the payload digest of the archive (what was actually written)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..manifest import format_timestamp, parse_timestamp, truncate_seconds


class AttestationFormat(str, Enum):
    """Attestation envelope formats."""
    SIGSTORE = "sigstore"
    IN_TOTO = "in-toto"
    SLSA = "slsa"


@dataclass
class Attestation:
    """Signed statement about a bundle's production."""
    format: str
    signed_by: str
    signed_at: datetime
    plan_hash: str
    output_hash: str
    provenance: Dict[str, Any] = field(default_factory=dict)
    signature: str = ""
    said: str = ""
    transparency_log: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        self.signed_at = truncate_seconds(self.signed_at)

    def statement(self) -> Dict[str, Any]:
        """The signed portion: everything except signature, SAID and log entry."""
        return {
            "format": self.format,
            "signed_by": self.signed_by,
            "signed_at": format_timestamp(self.signed_at),
            "plan_hash": self.plan_hash,
            "output_hash": self.output_hash,
            "provenance": self.provenance,
        }

    def signable_bytes(self) -> bytes:
        return json.dumps(
            self.statement(), sort_keys=True, separators=(",", ":"), ensure_ascii=False,
        ).encode("utf-8")

    @property
    def has_transparency_log(self) -> bool:
        return bool(self.transparency_log)

    def to_dict(self) -> Dict[str, Any]:
        data = self.statement()
        data["signature"] = self.signature
        data["said"] = self.said
        if self.transparency_log:
            data["transparency_log"] = dict(self.transparency_log)
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Attestation:
        return cls(
            format=data.get("format", ""),
            signed_by=data.get("signed_by", ""),
            signed_at=parse_timestamp(data["signed_at"]),
            plan_hash=data.get("plan_hash", ""),
            output_hash=data.get("output_hash", ""),
            provenance=dict(data.get("provenance") or {}),
            signature=data.get("signature", ""),
            said=data.get("said", ""),
            transparency_log=data.get("transparency_log"),
        )

    @classmethod
    def from_json(cls, text: str) -> Attestation:
        return cls.from_dict(json.loads(text))
