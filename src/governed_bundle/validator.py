# -*- encoding: utf-8 -*-
"""
Bundle Validator - Independent checksum, approval, attestation and policy checks.

All requested checks run even when an earlier one fails, so a single run
reports every problem. Only an unreadable archive (CORRUPTED_BUNDLE) or an
unparsable manifest (INVALID_MANIFEST) stops verification before the checks.

verify() never raises. Automation branches on the returned ValidationResult
(see gate.py for the exit-code mapping).

Usage:
    from governed_bundle.validator import BundleValidator, VerifyOptions

    validator = BundleValidator(VerifyOptions(
        require_approvals=True,
        required_roles=["pm", "security"],
    ))
    result = validator.verify("release.gbundle.tgz")
    if not result.valid:
        for issue in result.errors:
            print(issue.code, issue.message)
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Dict, List, Optional

from packaging.version import InvalidVersion, Version

from .approval import Approval
from .archive import load_bundle
from .attestation import AttestationVerifier
from .bundle import Bundle
from .config import BundleConfig
from .digest import manifest_digest
from .errors import (
    APPROVAL_FAILED,
    ATTESTATION_FAILED,
    CHECKSUM_MISMATCH,
    CORRUPTED_BUNDLE,
    DIGEST_MISMATCH,
    EXPIRING_SOON,
    INTERNAL_ERROR,
    INVALID_MANIFEST,
    MISSING_APPROVAL,
    MISSING_FILE,
    NONSTANDARD_VERSION,
    POLICY_EVALUATION_FAILED,
    POLICY_WARNING,
    TRANSPARENCY_LOG_MISSING,
    UNEXPECTED_FILE,
    UNVERIFIED_APPROVAL,
    AttestationError,
    BundleError,
    ManifestError,
    PolicyError,
    issue_details,
)
from .policy import PolicyEvaluator, evaluate_policy
from .signing import ApprovalVerifier

logger = logging.getLogger(__name__)

# Issue categories
INTEGRITY = "integrity"
APPROVAL = "approval"
ATTESTATION = "attestation"
POLICY = "policy"
INPUT = "input"

EXPIRY_WARNING_RATIO = 0.9


@dataclass
class VerifyOptions:
    """Which checks to run and how strictly."""
    strict: bool = False
    require_approvals: bool = False
    require_attestation: bool = False
    policy_path: str = ""
    trust_public_keys: List[str] = field(default_factory=list)
    allow_offline: bool = False
    required_roles: List[str] = field(default_factory=list)
    max_approval_age: Optional[timedelta] = None
    allowed_signers: List[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: BundleConfig, **overrides: Any) -> "VerifyOptions":
        """
        Options carrying the operator's approval settings.

        Configured required roles switch approval checking on.
        """
        options = cls(
            require_approvals=bool(config.required_roles),
            trust_public_keys=list(config.trusted_keys),
            required_roles=list(config.required_roles),
            max_approval_age=config.max_approval_age,
        )
        return replace(options, **overrides)


@dataclass
class ValidationIssue:
    """One error or warning."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    field: str = ""
    category: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message, "category": self.category}
        if self.field:
            data["field"] = self.field
        if self.details:
            data["details"] = dict(self.details)
        return data


@dataclass
class ValidationResult:
    """Structured verification outcome."""
    valid: bool = True
    checksum_valid: bool = True
    approvals_valid: bool = True
    attestation_valid: bool = True
    policy_compliant: bool = True
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    computed_digest: str = ""
    missing_roles: List[str] = field(default_factory=list)

    def add_error(self, code: str, message: str, field: str = "", category: str = "", **details: Any) -> None:
        self.errors.append(ValidationIssue(
            code, message, details=issue_details(**details), field=field, category=category,
        ))

    def add_warning(self, code: str, message: str, field: str = "", category: str = "", **details: Any) -> None:
        self.warnings.append(ValidationIssue(
            code, message, details=issue_details(**details), field=field, category=category,
        ))

    @property
    def error_codes(self) -> List[str]:
        return sorted({e.code for e in self.errors})

    def has_error(self, code: str) -> bool:
        return any(e.code == code for e in self.errors)

    def errors_for(self, category: str) -> List[ValidationIssue]:
        return [e for e in self.errors if e.category == category]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "checksum_valid": self.checksum_valid,
            "approvals_valid": self.approvals_valid,
            "attestation_valid": self.attestation_valid,
            "policy_compliant": self.policy_compliant,
            "computed_digest": self.computed_digest,
            "missing_roles": list(self.missing_roles),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


class BundleValidator:
    """
    Runs the requested checks against a bundle archive.

    Collaborators are injectable; defaults are built from VerifyOptions.
    """

    def __init__(
        self,
        options: Optional[VerifyOptions] = None,
        approval_verifier: Optional[ApprovalVerifier] = None,
        attestation_verifier: Optional[AttestationVerifier] = None,
        policy_evaluator: Optional[PolicyEvaluator] = None,
    ):
        self.options = options or VerifyOptions()
        self._approvals = approval_verifier or ApprovalVerifier(
            trusted_keys=self.options.trust_public_keys,
            max_age=self.options.max_approval_age,
        )
        self._attestations = attestation_verifier or AttestationVerifier(
            allowed_signers=self.options.allowed_signers,
        )
        self._policy = policy_evaluator

    @classmethod
    def from_config(
        cls,
        config: BundleConfig,
        policy_evaluator: Optional[PolicyEvaluator] = None,
        **overrides: Any,
    ) -> "BundleValidator":
        """Validator whose options and approval verifier both follow ``config``."""
        return cls(
            VerifyOptions.from_config(config, **overrides),
            approval_verifier=ApprovalVerifier.from_config(config),
            policy_evaluator=policy_evaluator,
        )

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    def verify(self, bundle_path: str, extra_approvals: Optional[List[Approval]] = None) -> ValidationResult:
        """Load and verify the archive at ``bundle_path``."""
        try:
            bundle = load_bundle(bundle_path)
        except ManifestError as e:
            return self._fatal(INVALID_MANIFEST, f"failed to load manifest: {e}", "manifest")
        except BundleError as e:
            return self._fatal(CORRUPTED_BUNDLE, f"failed to read bundle: {e}", "")
        except Exception as e:
            logger.exception(f"Unexpected error loading {bundle_path}")
            return self._fatal(INTERNAL_ERROR, f"unexpected error loading bundle: {e}", "")
        return self.verify_bundle(bundle, extra_approvals)

    def verify_bundle(self, bundle: Bundle, extra_approvals: Optional[List[Approval]] = None) -> ValidationResult:
        """Verify an already-loaded bundle."""
        opts = self.options
        result = ValidationResult()

        self._run("checksum", result, self._check_checksums, bundle, result)
        if opts.require_approvals:
            self._run("approvals", result, self._check_approvals, bundle, result, extra_approvals or [])
        elif bundle.approvals or extra_approvals:
            self._run("approvals", result, self._check_embedded_approvals, bundle, result, extra_approvals or [])
        if opts.require_attestation:
            self._run("attestation", result, self._check_attestation, bundle, result)
        if opts.policy_path:
            self._run("policy", result, self._check_policy, bundle, result, extra_approvals or [])

        if opts.strict and result.warnings:
            result.errors.extend(result.warnings)
            result.warnings = []

        result.valid = (
            result.checksum_valid
            and result.approvals_valid
            and result.attestation_valid
            and result.policy_compliant
            and not result.errors
        )
        level = logging.INFO if result.valid else logging.WARNING
        logger.log(
            level,
            f"Verified {bundle.manifest.id}@{bundle.manifest.version}: valid={result.valid}, "
            f"{len(result.errors)} error(s), {len(result.warnings)} warning(s)",
        )
        return result

    def _fatal(self, code: str, message: str, field: str) -> ValidationResult:
        opts = self.options
        result = ValidationResult(
            valid=False,
            checksum_valid=False,
            approvals_valid=not opts.require_approvals,
            attestation_valid=not opts.require_attestation,
            policy_compliant=not opts.policy_path,
        )
        result.add_error(code, message, field, INPUT)
        logger.warning(f"Verification aborted: {message}")
        return result

    @staticmethod
    def _run(name: str, result: ValidationResult, check, *args) -> None:
        # A crashing check must not hide the other checks' findings
        try:
            check(*args)
        except Exception as e:
            logger.exception(f"{name} check raised")
            flag = {
                "checksum": "checksum_valid",
                "approvals": "approvals_valid",
                "attestation": "attestation_valid",
                "policy": "policy_compliant",
            }[name]
            setattr(result, flag, False)
            result.add_error(INTERNAL_ERROR, f"{name} check failed unexpectedly: {e}", category=INPUT)

    # -----------------------------------------------------------------------
    # Checksum
    # -----------------------------------------------------------------------

    def _check_checksums(self, bundle: Bundle, result: ValidationResult) -> None:
        manifest = bundle.manifest

        for problem in manifest.validate():
            result.add_error(problem.code, problem.message, problem.field, INPUT)

        try:
            Version(manifest.version)
        except InvalidVersion:
            if manifest.version:
                result.add_warning(
                    NONSTANDARD_VERSION,
                    f"version {manifest.version!r} is not PEP 440 compliant",
                    "version",
                    INPUT,
                )

        ok = True
        actual = bundle.checksums()
        for entry in manifest.files:
            if entry.path not in actual:
                ok = False
                result.add_error(
                    MISSING_FILE, f"file not found: {entry.path}", entry.path, INTEGRITY,
                )
            elif actual[entry.path] != entry.checksum:
                ok = False
                result.add_error(
                    CHECKSUM_MISMATCH,
                    f"checksum mismatch for {entry.path}",
                    entry.path,
                    INTEGRITY,
                    expected=entry.checksum,
                    actual=actual[entry.path],
                )

        listed = set(manifest.paths)
        for path in sorted(actual):
            if path not in listed:
                ok = False
                result.add_error(
                    UNEXPECTED_FILE, f"file not listed in manifest: {path}", path, INTEGRITY,
                )

        result.computed_digest = bundle.current_digest()
        if manifest.integrity.digest and result.computed_digest != manifest.integrity.digest:
            ok = False
            result.add_error(
                DIGEST_MISMATCH,
                "bundle digest does not match manifest",
                "integrity.digest",
                INTEGRITY,
                expected=manifest.integrity.digest,
                actual=result.computed_digest,
            )

        if manifest.integrity.manifest_digest:
            recomputed = manifest_digest(manifest)
            if recomputed != manifest.integrity.manifest_digest:
                ok = False
                result.add_error(
                    DIGEST_MISMATCH,
                    "manifest fields were modified after build",
                    "integrity.manifest_digest",
                    INTEGRITY,
                    expected=manifest.integrity.manifest_digest,
                    actual=recomputed,
                )

        if not ok:
            result.checksum_valid = False

    # -----------------------------------------------------------------------
    # Approvals
    # -----------------------------------------------------------------------

    def _required_roles(self, bundle: Bundle) -> List[str]:
        return sorted(set(self.options.required_roles) | set(bundle.manifest.required_approvals))

    def _check_approvals(self, bundle: Bundle, result: ValidationResult, extra: List[Approval]) -> None:
        approvals = list(bundle.approvals) + list(extra)
        required = self._required_roles(bundle)
        digest = result.computed_digest or bundle.current_digest()

        if not approvals:
            result.approvals_valid = False
            result.missing_roles = required
            if required:
                for role in required:
                    result.add_error(
                        MISSING_APPROVAL, f"missing valid approval for role: {role}",
                        "approvals", APPROVAL, role=role,
                    )
            else:
                result.add_error(MISSING_APPROVAL, "bundle has no approvals", "approvals", APPROVAL)
            return

        status = self._approvals.verify_all(approvals, digest, required)
        for failure in status.failures:
            a = failure.approval
            result.add_error(
                APPROVAL_FAILED,
                f"approval verification failed for role {a.role} ({a.user}): {failure.error.message}",
                "approvals",
                APPROVAL,
                role=a.role,
                user=a.user,
                reason=failure.code,
            )
        for role in status.missing_roles:
            result.add_error(
                MISSING_APPROVAL, f"missing valid approval for role: {role}",
                "approvals", APPROVAL, role=role,
            )
        result.missing_roles = status.missing_roles
        if status.failures or status.missing_roles:
            result.approvals_valid = False

        self._warn_expiring(status.valid, result)

    def _check_embedded_approvals(self, bundle: Bundle, result: ValidationResult, extra: List[Approval]) -> None:
        digest = result.computed_digest or bundle.current_digest()
        status = self._approvals.verify_all(list(bundle.approvals) + list(extra), digest)
        for failure in status.failures:
            a = failure.approval
            result.add_warning(
                UNVERIFIED_APPROVAL,
                f"approval {a.role} ({a.user}) does not verify: {failure.error.message}",
                "approvals",
                APPROVAL,
                role=a.role,
                user=a.user,
                reason=failure.code,
            )

    def _warn_expiring(self, approvals: List[Approval], result: ValidationResult) -> None:
        max_age = self.options.max_approval_age
        if not max_age:
            return
        threshold = max_age * EXPIRY_WARNING_RATIO
        for a in approvals:
            if a.is_expired(threshold):
                result.add_warning(
                    EXPIRING_SOON,
                    f"approval {a.role} ({a.user}) expires soon",
                    "approvals",
                    APPROVAL,
                    role=a.role,
                    user=a.user,
                )

    # -----------------------------------------------------------------------
    # Attestation
    # -----------------------------------------------------------------------

    def _check_attestation(self, bundle: Bundle, result: ValidationResult) -> None:
        attestation = bundle.attestation
        if attestation is None:
            result.attestation_valid = False
            result.add_error(ATTESTATION_FAILED, "attestation is missing", "attestation", ATTESTATION)
            return

        digest = result.computed_digest or bundle.current_digest()
        try:
            self._attestations.verify(attestation, digest, bundle.payload_digest())
        except AttestationError as e:
            result.attestation_valid = False
            result.add_error(
                ATTESTATION_FAILED,
                f"attestation verification failed: {e.message}",
                "attestation",
                ATTESTATION,
            )
            return

        if not attestation.has_transparency_log and not self.options.allow_offline:
            result.add_warning(
                TRANSPARENCY_LOG_MISSING,
                "attestation has no transparency log entry",
                "attestation.transparency_log",
                ATTESTATION,
            )

    # -----------------------------------------------------------------------
    # Policy
    # -----------------------------------------------------------------------

    def _check_policy(self, bundle: Bundle, result: ValidationResult, extra: List[Approval]) -> None:
        policy_path = self.options.policy_path
        if self._policy is None:
            result.policy_compliant = False
            result.add_error(
                POLICY_EVALUATION_FAILED,
                "no policy evaluator configured",
                "policy",
                POLICY,
                policy_path=policy_path,
            )
            return

        try:
            verdict = evaluate_policy(
                self._policy, bundle.manifest, list(bundle.approvals) + list(extra), policy_path,
            )
        except PolicyError as e:
            result.policy_compliant = False
            result.add_error(POLICY_EVALUATION_FAILED, e.message, "policy", POLICY, policy_path=policy_path)
            return

        for violation in verdict.violations:
            result.add_error(
                violation.code,
                violation.message,
                violation.field or "policy",
                POLICY,
                rule=violation.rule,
                policy_path=policy_path,
            )
        for warning in verdict.warnings:
            result.add_warning(POLICY_WARNING, warning, "policy", POLICY, policy_path=policy_path)
        if not verdict.compliant:
            result.policy_compliant = False
