# -*- encoding: utf-8 -*-
"""
governed-bundle - Verifiable, content-addressed bundles of governance artifacts.

Build a bundle from a project's spec, lock file, routing config, policies and
includes; collect role-scoped approvals bound to its integrity digest; verify
and gate it in CI; diff two bundles; apply one onto a working tree.

Usage:
    from governed_bundle import (
        BuildOptions, BundleBuilder,
        ApprovalSigner, attach_approval,
        BundleValidator, VerifyOptions, Gate,
    )

    result = BundleBuilder(BuildOptions(spec_path="spec.yaml")).build("out.gbundle.tgz")
    approval = ApprovalSigner().sign_approval(result.digest, "pm", "alice")
    attach_approval("out.gbundle.tgz", approval)

    gate = Gate(BundleValidator(VerifyOptions(require_approvals=True, required_roles=["pm"])))
    exit_code = gate.evaluate("out.gbundle.tgz").exit_code
"""

__version__ = "0.1.0"

from .approval import Approval, SignatureType, canonical_message
from .archive import (
    attach_approval,
    attach_attestation,
    get_bundle_info,
    load_bundle,
)
from .attestation import (
    Attestation,
    AttestationFormat,
    AttestationGenerator,
    AttestationVerifier,
    KeriAttestationGenerator,
)
from .builder import BuildOptions, BuildResult, BundleBuilder
from .bundle import ApprovalStatus, Bundle, BundleInfo
from .config import BundleConfig, default_user, load_config
from .diff import DiffResult, diff_bundles
from .digest import compute_digest, file_checksum
from .errors import (
    ApplyError,
    BundleError,
    BundleIOError,
    InputError,
    IntegrityError,
    MissingInput,
    PathConflict,
    PolicyError,
    SigningError,
    VerificationError,
)
from .extractor import ApplyOptions, BundleExtractor
from .gate import ExitCode, Gate, classify
from .manifest import BundleManifest, FileEntry, IntegrityInfo
from .policy import PolicyEvaluator, PolicyVerdict, PolicyViolation
from .repository import ApprovalRepository, FileRepository, InMemoryRepository, Repository
from .signing import ApprovalSigner, ApprovalVerifier, GPGBackend, SSHBackend
from .validator import BundleValidator, ValidationResult, VerifyOptions

__all__ = [
    "__version__",
    # Model
    "Approval",
    "Attestation",
    "AttestationFormat",
    "ApprovalStatus",
    "Bundle",
    "BundleInfo",
    "BundleManifest",
    "FileEntry",
    "IntegrityInfo",
    "SignatureType",
    "canonical_message",
    # Digest
    "compute_digest",
    "file_checksum",
    # Build / archive
    "BuildOptions",
    "BuildResult",
    "BundleBuilder",
    "attach_approval",
    "attach_attestation",
    "get_bundle_info",
    "load_bundle",
    # Signing
    "ApprovalSigner",
    "ApprovalVerifier",
    "GPGBackend",
    "SSHBackend",
    # Attestation
    "AttestationGenerator",
    "AttestationVerifier",
    "KeriAttestationGenerator",
    # Verify / gate
    "BundleValidator",
    "ExitCode",
    "Gate",
    "ValidationResult",
    "VerifyOptions",
    "classify",
    # Policy
    "PolicyEvaluator",
    "PolicyVerdict",
    "PolicyViolation",
    # Diff / apply
    "ApplyOptions",
    "BundleExtractor",
    "DiffResult",
    "diff_bundles",
    # Storage / config
    "ApprovalRepository",
    "BundleConfig",
    "FileRepository",
    "InMemoryRepository",
    "Repository",
    "default_user",
    "load_config",
    # Errors
    "ApplyError",
    "BundleError",
    "BundleIOError",
    "InputError",
    "IntegrityError",
    "MissingInput",
    "PathConflict",
    "PolicyError",
    "SigningError",
    "VerificationError",
]
