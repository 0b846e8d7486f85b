# -*- encoding: utf-8 -*-
"""
Tests for the CI gate.

Verifies:
- Fixed exit-code table and its priority order
- End-to-end: build, approve one of two roles, gate exits 40
- Unexpected failures map to 60 instead of raising
"""

from unittest.mock import MagicMock

import pytest

from conftest import build_bundle, rewrite_member
from governed_bundle.archive import attach_approval, load_bundle
from governed_bundle.errors import (
    APPROVAL_FAILED,
    CHECKSUM_MISMATCH,
    DRIFT_DETECTED,
    FORBIDDEN_PROVIDER,
    INTERNAL_ERROR,
    MISSING_APPROVAL,
    POLICY_COMPLIANCE_FAILED,
    POLICY_VIOLATION,
    PROVIDER_NOT_ALLOWED,
)
from governed_bundle.gate import ExitCode, Gate, classify
from governed_bundle.policy import PolicyEvaluator, PolicyVerdict, PolicyViolation
from governed_bundle.validator import BundleValidator, VerifyOptions


class ViolationEvaluator(PolicyEvaluator):
    def __init__(self, *codes):
        self.codes = codes

    def evaluate(self, manifest, approvals, policy_path):
        return PolicyVerdict(
            compliant=not self.codes,
            violations=[PolicyViolation(f"{c} raised by test", code=c) for c in self.codes],
        )


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------


class TestClassify:
    """Exit-code table."""

    @pytest.mark.parametrize("code,expected", [
        (POLICY_VIOLATION, 20),
        (POLICY_COMPLIANCE_FAILED, 20),
        (DRIFT_DETECTED, 30),
        (MISSING_APPROVAL, 40),
        (APPROVAL_FAILED, 40),
        (FORBIDDEN_PROVIDER, 50),
        (PROVIDER_NOT_ALLOWED, 50),
        (CHECKSUM_MISMATCH, 60),
        ("SOMETHING_NEW", 60),
        (INTERNAL_ERROR, 60),
    ])
    def test_single_code(self, code, expected):
        assert classify([code]) == expected

    def test_valid(self):
        assert classify([], valid=True) == ExitCode.SUCCESS

    def test_invalid_without_codes(self):
        assert classify([]) == ExitCode.FAILURE

    def test_priority_not_order(self):
        """First matching row wins, regardless of error order."""
        assert classify([FORBIDDEN_PROVIDER, MISSING_APPROVAL]) == ExitCode.MISSING_APPROVAL
        assert classify([MISSING_APPROVAL, POLICY_VIOLATION]) == ExitCode.POLICY_VIOLATION
        assert classify([CHECKSUM_MISMATCH, DRIFT_DETECTED]) == ExitCode.DRIFT_DETECTED


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class TestGate:
    """Verify, then classify."""

    def test_clean_bundle_passes(self, bundle_path):
        outcome = Gate().evaluate(str(bundle_path))
        assert outcome.passed
        assert outcome.exit_code == 0
        assert outcome.reasons == []

    def test_end_to_end_missing_role(self, project, tmp_path, signer, ed25519_key):
        """Build with {pm, security}, approve pm only, gate exits 40."""
        out = tmp_path / "release.gbundle.tgz"
        result = build_bundle(project, out, required_approvals=["pm", "security"])

        digest = load_bundle(out).current_digest()
        assert digest == result.digest
        attach_approval(out, signer.sign_approval(digest, "pm", "alice", "LGTM", key_path=str(ed25519_key)))

        outcome = Gate(BundleValidator(VerifyOptions(require_approvals=True))).evaluate(str(out))

        assert outcome.exit_code == ExitCode.MISSING_APPROVAL
        assert int(outcome.exit_code) == 40
        assert outcome.result.missing_roles == ["security"]

    def test_tamper_after_approval(self, bundle_path, signer, ed25519_key):
        """Build, sign, verify, edit, re-verify."""
        gate = Gate(BundleValidator(VerifyOptions(require_approvals=True, required_roles=["pm"])))
        digest = load_bundle(bundle_path).current_digest()
        attach_approval(bundle_path, signer.sign_approval(digest, "pm", "alice", key_path=str(ed25519_key)))
        assert gate.evaluate(str(bundle_path)).passed

        rewrite_member(bundle_path, "spec.yaml", b"A")
        outcome = gate.evaluate(str(bundle_path))

        # APPROVAL_FAILED outranks CHECKSUM_MISMATCH in the table
        assert outcome.exit_code == 40
        assert CHECKSUM_MISMATCH in outcome.result.error_codes
        assert outcome.result.missing_roles == ["pm"]

    def test_tamper_without_approvals(self, bundle_path):
        rewrite_member(bundle_path, "spec.yaml", b"A")
        assert Gate().evaluate(str(bundle_path)).exit_code == 60

    def test_forbidden_provider(self, bundle_path):
        validator = BundleValidator(
            VerifyOptions(policy_path="providers.rego"),
            policy_evaluator=ViolationEvaluator(FORBIDDEN_PROVIDER),
        )
        outcome = Gate(validator).evaluate(str(bundle_path))
        assert outcome.exit_code == 50
        assert outcome.reasons == [f"{FORBIDDEN_PROVIDER} raised by test"]

    def test_drift(self, bundle_path):
        validator = BundleValidator(
            VerifyOptions(policy_path="p.rego"),
            policy_evaluator=ViolationEvaluator(DRIFT_DETECTED, FORBIDDEN_PROVIDER),
        )
        assert Gate(validator).evaluate(str(bundle_path)).exit_code == 30

    def test_corrupted(self, tmp_path):
        bad = tmp_path / "bad.gbundle.tgz"
        bad.write_bytes(b"\x1f\x8b garbage")
        assert Gate().evaluate(str(bad)).exit_code == 60

    def test_validator_raises(self, bundle_path):
        validator = MagicMock(spec=BundleValidator)
        validator.verify.side_effect = RuntimeError("disk on fire")

        outcome = Gate(validator).evaluate(str(bundle_path))

        assert outcome.exit_code == ExitCode.FAILURE
        assert outcome.result.error_codes == [INTERNAL_ERROR]
        assert "disk on fire" in outcome.reasons[0]
