# -*- encoding: utf-8 -*-
"""
KERI Attestations - Ed25519 attestations signed with a keripy Signer.

The generator is the one concrete AttestationGenerator shipped with the
package. Sigstore, in-toto and SLSA transparency backends plug in through the
same ABC; they are not implemented here.

Usage:
    from keri.core.signing import Signer
    from governed_bundle.attestation import KeriAttestationGenerator, AttestationVerifier

    generator = KeriAttestationGenerator(signer=Signer(transferable=False))
    attestation = generator.generate(bundle)

    AttestationVerifier().verify(
        attestation,
        current_digest=bundle.current_digest(),
        payload_digest=bundle.payload_digest(),
    )
"""

import logging
import platform
import socket
import sys
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from keri.core.coring import Cigar, Diger, MtrDex
from keri.core.signing import Signer, Verfer

from ..errors import AttestationError
from .statement import Attestation, AttestationFormat

if TYPE_CHECKING:
    from ..bundle import Bundle

logger = logging.getLogger(__name__)


def compute_said(raw: bytes) -> str:
    """Blake3 SAID (qb64) of a serialized statement."""
    return Diger(ser=raw, code=MtrDex.Blake3_256).qb64


def gather_provenance(bundle: "Bundle", tool_version: str) -> Dict[str, Any]:
    """Describe the environment that produced the attestation."""
    return {
        "bundle_id": bundle.manifest.id,
        "bundle_version": bundle.manifest.version,
        "hostname": socket.gethostname(),
        "platform": f"{platform.system().lower()}-{platform.machine()}",
        "python": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        "tool_version": tool_version,
    }


class AttestationGenerator(ABC):
    """Produces an attestation for an already-finalized bundle."""

    @abstractmethod
    def generate(self, bundle: "Bundle") -> Attestation:
        """Create an attestation snapshotting ``bundle`` as it is now."""


class KeriAttestationGenerator(AttestationGenerator):
    """
    Attestation generator backed by a KERI Ed25519 signer.

    ``signed_by`` is the signer's verification key in qb64, so verification
    needs nothing but the attestation itself plus an allowlist of signers
    the caller trusts.
    """

    def __init__(
        self,
        signer: Optional[Signer] = None,
        format: AttestationFormat = AttestationFormat.IN_TOTO,
        tool_version: str = "",
    ):
        # Ephemeral non-transferable key unless the caller supplies one
        self._signer = signer or Signer(transferable=False)
        self._format = AttestationFormat(format)
        if not tool_version:
            from .. import __version__
            tool_version = __version__
        self._tool_version = tool_version

    @property
    def signer_id(self) -> str:
        return self._signer.verfer.qb64

    def generate(self, bundle: "Bundle") -> Attestation:
        attestation = Attestation(
            format=self._format.value,
            signed_by=self.signer_id,
            signed_at=datetime.now(timezone.utc),
            plan_hash=bundle.current_digest(),
            output_hash=bundle.payload_digest(),
            provenance=gather_provenance(bundle, self._tool_version),
        )
        raw = attestation.signable_bytes()
        cigar = self._signer.sign(ser=raw)
        attestation.signature = cigar.qb64
        attestation.said = compute_said(raw)

        logger.debug(f"Attested {bundle.manifest.id} as {attestation.said[:16]}...")
        return attestation


class AttestationVerifier:
    """
    Verifies KERI-signed attestations against a bundle's current state.

    Checks, in order: known format, signer allowlist, signature, SAID,
    plan hash, output hash, age.
    """

    def __init__(
        self,
        allowed_signers: Optional[List[str]] = None,
        max_age: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._allowed_signers = list(allowed_signers or [])
        self._max_age = max_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def verify(self, attestation: Attestation, current_digest: str, payload_digest: str) -> None:
        """
        Raise AttestationError unless the attestation matches the bundle.

        Args:
            attestation: The stored attestation
            current_digest: Digest recomputed from the archive bytes
            payload_digest: Payload digest recomputed from the archive bytes
        """
        known = {f.value for f in AttestationFormat}
        if attestation.format not in known:
            raise AttestationError(f"unknown attestation format: {attestation.format}")
        if not attestation.signature or not attestation.signed_by:
            raise AttestationError("attestation is not signed")
        if self._allowed_signers and attestation.signed_by not in self._allowed_signers:
            raise AttestationError(f"attestation signer is not trusted: {attestation.signed_by}")

        raw = attestation.signable_bytes()
        try:
            verfer = Verfer(qb64=attestation.signed_by)
            cigar = Cigar(qb64=attestation.signature)
            verified = verfer.verify(sig=cigar.raw, ser=raw)
        except Exception as e:
            raise AttestationError(f"malformed attestation signature material: {e}") from e
        if not verified:
            raise AttestationError("attestation signature is invalid")

        if attestation.said and attestation.said != compute_said(raw):
            raise AttestationError("attestation SAID does not match its statement")
        if attestation.plan_hash != current_digest:
            raise AttestationError(
                f"attestation plan hash {attestation.plan_hash} does not match bundle digest {current_digest}"
            )
        if attestation.output_hash != payload_digest:
            raise AttestationError("attestation output hash does not match archive contents")

        if self._max_age and self._clock() - attestation.signed_at > self._max_age:
            raise AttestationError(
                f"attestation expired (signed {attestation.signed_at.isoformat()}, max age {self._max_age})"
            )
