# -*- encoding: utf-8 -*-
"""
Signing Module - Approval signatures over bundle digests.

Usage:
    from governed_bundle.signing import (
        ApprovalSigner,
        ApprovalVerifier,
        SSHBackend,
        GPGBackend,
    )
"""

from .backends import (
    DEFAULT_SSH_KEYS,
    GPGBackend,
    SignatureBackend,
    SignedPayload,
    SSHBackend,
    default_ssh_key,
    ssh_fingerprint,
)

from .signer import (
    ApprovalSigner,
    ApprovalVerifier,
    default_backends,
)

__all__ = [
    # Backends
    "DEFAULT_SSH_KEYS",
    "GPGBackend",
    "SignatureBackend",
    "SignedPayload",
    "SSHBackend",
    "default_ssh_key",
    "ssh_fingerprint",
    # Signer / verifier
    "ApprovalSigner",
    "ApprovalVerifier",
    "default_backends",
]
