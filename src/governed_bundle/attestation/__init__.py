# -*- encoding: utf-8 -*-
"""
Attestation Module - Side-car provenance statements for bundles.

Usage:
    from governed_bundle.attestation import (
        Attestation,
        AttestationFormat,
        AttestationGenerator,
        KeriAttestationGenerator,
        AttestationVerifier,
    )
"""

from .statement import (
    Attestation,
    AttestationFormat,
)

from .keri_attest import (
    AttestationGenerator,
    KeriAttestationGenerator,
    AttestationVerifier,
    compute_said,
    gather_provenance,
)

__all__ = [
    # Statement
    "Attestation",
    "AttestationFormat",
    # Generation / verification
    "AttestationGenerator",
    "KeriAttestationGenerator",
    "AttestationVerifier",
    "compute_said",
    "gather_provenance",
]
