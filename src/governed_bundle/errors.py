# -*- encoding: utf-8 -*-
"""
Bundle Errors - Exception taxonomy and validation codes.

Two layers:
- Exceptions raised by operations that fail outright (build, sign, apply).
- String codes carried by ValidationResult entries. Automation branches on
  these codes (see gate.py), so their spelling is part of the contract.

Usage:
    from governed_bundle.errors import MissingInput, CHECKSUM_MISMATCH

    try:
        builder.build("out.gbundle.tgz")
    except MissingInput as e:
        print(e.path, e.suggestion)
"""

from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Validation error codes
# ---------------------------------------------------------------------------

CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
MISSING_FILE = "MISSING_FILE"
UNEXPECTED_FILE = "UNEXPECTED_FILE"
DIGEST_MISMATCH = "DIGEST_MISMATCH"
INVALID_MANIFEST = "INVALID_MANIFEST"
UNSUPPORTED_SCHEMA = "UNSUPPORTED_SCHEMA"
CORRUPTED_BUNDLE = "CORRUPTED_BUNDLE"
MISSING_APPROVAL = "MISSING_APPROVAL"
APPROVAL_FAILED = "APPROVAL_FAILED"
INVALID_SIGNATURE = "INVALID_SIGNATURE"
UNSUPPORTED_SIGNATURE_TYPE = "UNSUPPORTED_SIGNATURE_TYPE"
UNTRUSTED_KEY = "UNTRUSTED_KEY"
APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
ROLE_NOT_ALLOWED = "ROLE_NOT_ALLOWED"
COMMENT_REQUIRED = "COMMENT_REQUIRED"
ATTESTATION_FAILED = "ATTESTATION_FAILED"
POLICY_VIOLATION = "POLICY_VIOLATION"
POLICY_COMPLIANCE_FAILED = "POLICY_COMPLIANCE_FAILED"
POLICY_EVALUATION_FAILED = "POLICY_EVALUATION_FAILED"
DRIFT_DETECTED = "DRIFT_DETECTED"
FORBIDDEN_PROVIDER = "FORBIDDEN_PROVIDER"
PROVIDER_NOT_ALLOWED = "PROVIDER_NOT_ALLOWED"
INTERNAL_ERROR = "INTERNAL_ERROR"

# Warning codes
UNVERIFIED_APPROVAL = "UNVERIFIED_APPROVAL"
NONSTANDARD_VERSION = "NONSTANDARD_VERSION"
TRANSPARENCY_LOG_MISSING = "TRANSPARENCY_LOG_MISSING"
EXPIRING_SOON = "EXPIRING_SOON"
POLICY_WARNING = "POLICY_WARNING"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BundleError(Exception):
    """
    Base exception for bundle operations.

    Carries the failed operation and an actionable suggestion so a caller
    can render something more useful than a stack trace. The underlying
    error, if any, is chained via ``raise ... from err``.
    """

    def __init__(
        self,
        message: str,
        operation: str = "",
        suggestion: str = "",
        details: str = "",
    ):
        self.message = message
        self.operation = operation
        self.suggestion = suggestion
        self.details = details
        super().__init__(self._render())

    def _render(self) -> str:
        if self.operation:
            text = f"bundle {self.operation} failed: {self.message}"
        else:
            text = self.message
        if self.details:
            text += f" ({self.details})"
        return text


class InputError(BundleError):
    """Bad or missing paths, malformed options. Never retried."""


class MissingInput(InputError):
    """A required input file is missing or unreadable."""

    def __init__(self, path: str, details: str = ""):
        self.path = path
        super().__init__(
            f"input not found or unreadable: {path}",
            operation="build",
            suggestion="Verify the file path is correct and the file is readable.",
            details=details,
        )


class PathConflict(InputError):
    """Two inputs would occupy the same relative path in the archive."""

    def __init__(self, path: str, details: str = ""):
        self.path = path
        super().__init__(
            f"path conflict in bundle: {path}",
            operation="build",
            suggestion="Rename the include or drop it; canonical inputs own their archive paths.",
            details=details,
        )


class IntegrityError(BundleError):
    """Checksum or digest mismatch. Always surfaced, never auto-corrected."""

    def __init__(self, message: str, path: str = "", expected: str = "", actual: str = ""):
        self.path = path
        self.expected = expected
        self.actual = actual
        details = f"expected: {expected}, got: {actual}" if expected or actual else ""
        super().__init__(
            message,
            operation="verify",
            suggestion="Rebuild the bundle if the change is expected; otherwise treat it as tampering.",
            details=details,
        )


class ArchiveError(BundleError):
    """Archive is unreadable, malformed, or breaks extraction limits."""

    code = CORRUPTED_BUNDLE

    def __init__(self, message: str, path: str = "", details: str = ""):
        self.path = path
        super().__init__(
            message,
            operation="load",
            suggestion="Re-download or rebuild the bundle.",
            details=details,
        )


class ManifestError(ArchiveError):
    """manifest.json is missing fields or cannot be parsed."""

    code = INVALID_MANIFEST


class SigningError(BundleError):
    """Approval could not be signed (no key, passphrase, unsupported type)."""

    code = "SIGNING_FAILED"

    def __init__(self, message: str, role: str = "", user: str = "", code: Optional[str] = None):
        self.role = role
        self.user = user
        if code is not None:
            self.code = code
        super().__init__(message, operation="sign")


class VerificationError(BundleError):
    """Approval or attestation failed verification."""

    code = APPROVAL_FAILED

    def __init__(self, message: str, role: str = "", user: str = "", code: Optional[str] = None):
        self.role = role
        self.user = user
        if code is not None:
            self.code = code
        super().__init__(message, operation="verify")


class InvalidSignature(VerificationError):
    """Signature does not match the canonical message for the current digest."""

    code = INVALID_SIGNATURE


class UnsupportedSignatureType(VerificationError):
    """No backend handles this signature type."""

    code = UNSUPPORTED_SIGNATURE_TYPE


class UntrustedKey(VerificationError):
    """Signing key fingerprint is not on the trusted-key allowlist."""

    code = UNTRUSTED_KEY


class ApprovalExpired(VerificationError):
    """Approval is older than the configured maximum age."""

    code = APPROVAL_EXPIRED


class AttestationError(VerificationError):
    """Attestation signature or content hash check failed."""

    code = ATTESTATION_FAILED


class PolicyError(BundleError):
    """Policy evaluator failed. The evaluator's message is relayed verbatim."""

    def __init__(self, message: str, policy_path: str = ""):
        self.policy_path = policy_path
        super().__init__(message, operation="policy")


class BundleIOError(BundleError):
    """Filesystem failure, wrapped with the operation name and path."""

    def __init__(self, operation: str, path: str, details: str = ""):
        self.path = path
        super().__init__(
            f"I/O error on {path}",
            operation=operation,
            suggestion="Check that the path exists and that you have read/write access.",
            details=details,
        )


class ApplyError(BundleError):
    """A write failed mid-apply. Earlier files stay applied; no rollback."""

    def __init__(self, failed_path: str, applied: List[str], details: str = ""):
        self.failed_path = failed_path
        self.applied = list(applied)
        super().__init__(
            f"failed to write {failed_path} ({len(self.applied)} file(s) already applied)",
            operation="apply",
            suggestion="Re-run the apply, or restore the target directory from version control.",
            details=details,
        )


def issue_details(**kwargs: Any) -> Dict[str, Any]:
    """Drop empty values so issue details stay compact in JSON output."""
    return {k: v for k, v in kwargs.items() if v not in (None, "", [], {})}
