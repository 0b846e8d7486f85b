# -*- encoding: utf-8 -*-
"""
Tests for BundleValidator.

Verifies:
- Clean bundles pass every check
- Tampering is reported as CHECKSUM_MISMATCH naming the path
- Approval checks: required roles, digest binding, embedded-only warnings
- Attestation checks over KERI-signed statements
- Policy boundary relays evaluator codes
- Corrupted archives and unparsable manifests stop early
- Strict mode promotes warnings
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import build_bundle, rewrite_member
from governed_bundle.archive import (
    MANIFEST_NAME,
    attach_approval,
    attach_attestation,
    load_bundle,
    pack,
    read_members,
)
from governed_bundle.attestation import AttestationVerifier, KeriAttestationGenerator
from governed_bundle.config import BundleConfig
from governed_bundle.errors import (
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
    POLICY_VIOLATION,
    POLICY_WARNING,
    TRANSPARENCY_LOG_MISSING,
    UNEXPECTED_FILE,
    UNVERIFIED_APPROVAL,
)
from governed_bundle.policy import PolicyEvaluator, PolicyVerdict, PolicyViolation
from governed_bundle.signing import ApprovalSigner, SSHBackend
from governed_bundle.validator import APPROVAL, INTEGRITY, BundleValidator, VerifyOptions


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class StaticEvaluator(PolicyEvaluator):
    """Returns a fixed verdict and records what it saw."""

    def __init__(self, verdict=None, error=None):
        self.verdict = verdict or PolicyVerdict(compliant=True)
        self.error = error
        self.calls = []

    def evaluate(self, manifest, approvals, policy_path):
        self.calls.append((manifest.id, [a.identity for a in approvals], policy_path))
        if self.error:
            raise self.error
        return self.verdict


def approve(bundle_path, signer, key_path, role, user, comment="ok"):
    digest = load_bundle(bundle_path).current_digest()
    approval = signer.sign_approval(digest, role, user, comment, key_path=str(key_path))
    attach_approval(bundle_path, approval)
    return approval


# ---------------------------------------------------------------------------
# Checksums
# ---------------------------------------------------------------------------


class TestChecksums:
    """Integrity of the file set."""

    def test_clean_bundle(self, bundle_path):
        result = BundleValidator().verify(str(bundle_path))

        assert result.valid
        assert result.checksum_valid
        assert result.errors == []
        assert result.computed_digest == load_bundle(bundle_path).recorded_digest

    def test_tampered_file(self, bundle_path):
        """Changing one byte of spec.yaml after build."""
        rewrite_member(bundle_path, "spec.yaml", b"A")
        result = BundleValidator().verify(str(bundle_path))

        assert not result.valid
        assert not result.checksum_valid
        mismatch = [e for e in result.errors if e.code == CHECKSUM_MISMATCH]
        assert len(mismatch) == 1
        assert mismatch[0].field == "spec.yaml"
        assert mismatch[0].category == INTEGRITY
        assert mismatch[0].details["actual"] != mismatch[0].details["expected"]
        assert result.has_error(DIGEST_MISMATCH)

    def test_missing_file(self, bundle_path):
        members = read_members(bundle_path)
        del members["policies/policy.yaml"]
        bundle_path.write_bytes(pack(members))
        result = BundleValidator().verify(str(bundle_path))

        assert result.has_error(MISSING_FILE)
        assert result.errors_for(INTEGRITY)[0].field == "policies/policy.yaml"

    def test_unexpected_file(self, bundle_path):
        rewrite_member(bundle_path, "extra.sh", b"rm -rf /")
        result = BundleValidator().verify(str(bundle_path))
        assert result.has_error(UNEXPECTED_FILE)

    def test_manifest_field_edit(self, bundle_path):
        """Editing required_approvals in place breaks the manifest digest."""
        manifest = json.loads(load_bundle(bundle_path).manifest_bytes)
        manifest["required_approvals"] = []
        manifest["description"] = "nothing to see"
        rewrite_member(bundle_path, MANIFEST_NAME, json.dumps(manifest).encode())
        result = BundleValidator().verify(str(bundle_path))

        assert result.has_error(DIGEST_MISMATCH)
        assert any(e.field == "integrity.manifest_digest" for e in result.errors)

    def test_nonstandard_version_warns(self, project, tmp_path):
        out = tmp_path / "odd.gbundle.tgz"
        build_bundle(project, out, version="release-candidate")
        result = BundleValidator().verify(str(out))
        assert result.valid
        assert [w.code for w in result.warnings] == [NONSTANDARD_VERSION]

    def test_strict_promotes_warnings(self, project, tmp_path):
        out = tmp_path / "odd.gbundle.tgz"
        build_bundle(project, out, version="release-candidate")
        result = BundleValidator(VerifyOptions(strict=True)).verify(str(out))
        assert not result.valid
        assert result.has_error(NONSTANDARD_VERSION)
        assert result.warnings == []


class TestFatal:
    """Unreadable inputs stop verification."""

    def test_corrupted_archive(self, bundle_path):
        data = bundle_path.read_bytes()
        bundle_path.write_bytes(data[: len(data) // 2])
        result = BundleValidator().verify(str(bundle_path))
        assert not result.valid
        assert result.error_codes == [CORRUPTED_BUNDLE]

    def test_missing_path(self, tmp_path):
        result = BundleValidator().verify(str(tmp_path / "absent.gbundle.tgz"))
        assert result.error_codes == [CORRUPTED_BUNDLE]

    def test_invalid_manifest(self, bundle_path):
        rewrite_member(bundle_path, MANIFEST_NAME, b"not json at all")
        result = BundleValidator().verify(str(bundle_path))
        assert result.error_codes == [INVALID_MANIFEST]
        assert not result.checksum_valid


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class TestApprovals:
    """Approval checks run against the recomputed digest."""

    def test_required_role_missing(self, project, tmp_path, signer, ed25519_key):
        """Required {pm, security}, only pm signed: missing {security}."""
        out = tmp_path / "r.gbundle.tgz"
        build_bundle(project, out, required_approvals=["pm", "security"])
        approve(out, signer, ed25519_key, "pm", "alice")

        result = BundleValidator(VerifyOptions(require_approvals=True)).verify(str(out))

        assert not result.valid
        assert result.checksum_valid
        assert not result.approvals_valid
        assert result.missing_roles == ["security"]
        missing = [e for e in result.errors if e.code == MISSING_APPROVAL]
        assert [e.details["role"] for e in missing] == ["security"]

    def test_all_roles_present(self, project, tmp_path, signer, ed25519_key):
        out = tmp_path / "r.gbundle.tgz"
        build_bundle(project, out, required_approvals=["pm", "security"])
        approve(out, signer, ed25519_key, "pm", "alice")
        approve(out, signer, ed25519_key, "security", "bob")

        result = BundleValidator(VerifyOptions(require_approvals=True)).verify(str(out))
        assert result.valid
        assert result.missing_roles == []

    def test_options_roles_union_manifest(self, project, tmp_path, signer, ed25519_key):
        out = tmp_path / "r.gbundle.tgz"
        build_bundle(project, out, required_approvals=["pm"])
        approve(out, signer, ed25519_key, "pm", "alice")

        options = VerifyOptions(require_approvals=True, required_roles=["legal"])
        result = BundleValidator(options).verify(str(out))
        assert result.missing_roles == ["legal"]

    def test_no_approvals(self, bundle_path):
        result = BundleValidator(VerifyOptions(require_approvals=True)).verify(str(bundle_path))
        assert result.error_codes == [MISSING_APPROVAL]
        assert result.checksum_valid

    def test_tamper_invalidates_approval(self, bundle_path, signer, ed25519_key):
        approve(bundle_path, signer, ed25519_key, "pm", "alice")
        rewrite_member(bundle_path, "spec.yaml", b"A")

        result = BundleValidator(VerifyOptions(require_approvals=True, required_roles=["pm"])).verify(str(bundle_path))

        assert result.has_error(CHECKSUM_MISMATCH)
        failed = [e for e in result.errors if e.code == APPROVAL_FAILED]
        assert failed[0].details == {"role": "pm", "user": "alice", "reason": "INVALID_SIGNATURE"}
        assert failed[0].category == APPROVAL
        assert result.missing_roles == ["pm"]

    def test_extra_approvals(self, project, tmp_path, signer, ed25519_key):
        """Approvals from a repository count alongside embedded ones."""
        out = tmp_path / "r.gbundle.tgz"
        build_bundle(project, out, required_approvals=["pm"])
        digest = load_bundle(out).current_digest()
        extra = signer.sign_approval(digest, "pm", "alice", key_path=str(ed25519_key))

        result = BundleValidator(VerifyOptions(require_approvals=True)).verify(str(out), [extra])
        assert result.valid

    def test_embedded_failures_warn_when_not_required(self, bundle_path, signer, ed25519_key):
        approve(bundle_path, signer, ed25519_key, "pm", "alice")
        approval = load_bundle(bundle_path).approvals[0]
        approval.comment = "forged"
        attach_approval(bundle_path, approval)

        result = BundleValidator().verify(str(bundle_path))
        assert result.valid
        assert [w.code for w in result.warnings] == [UNVERIFIED_APPROVAL]

    def test_expiring_soon(self, bundle_path, ed25519_key, tmp_path):
        """Signed 55 minutes ago against a one-hour limit."""
        signed_at = datetime.now(timezone.utc) - timedelta(minutes=55)
        signer = ApprovalSigner(backends={"ssh": SSHBackend(home=tmp_path)}, clock=lambda: signed_at)
        approve(bundle_path, signer, ed25519_key, "pm", "alice")

        options = VerifyOptions(require_approvals=True, max_approval_age=timedelta(hours=1))
        result = BundleValidator(options).verify(str(bundle_path))

        assert result.valid
        assert [w.code for w in result.warnings] == [EXPIRING_SOON]

    def test_expired(self, bundle_path, ed25519_key, tmp_path):
        signed_at = datetime.now(timezone.utc) - timedelta(hours=2)
        signer = ApprovalSigner(backends={"ssh": SSHBackend(home=tmp_path)}, clock=lambda: signed_at)
        approve(bundle_path, signer, ed25519_key, "pm", "alice")

        options = VerifyOptions(require_approvals=True, max_approval_age=timedelta(hours=1))
        result = BundleValidator(options).verify(str(bundle_path))

        assert result.error_codes == [APPROVAL_FAILED]
        assert result.errors[0].details["reason"] == "APPROVAL_EXPIRED"

    def test_untrusted_key(self, bundle_path, signer, ed25519_key):
        approve(bundle_path, signer, ed25519_key, "pm", "alice")
        options = VerifyOptions(require_approvals=True, trust_public_keys=["SHA256:nobody"])
        result = BundleValidator(options).verify(str(bundle_path))
        assert result.errors[0].details["reason"] == "UNTRUSTED_KEY"


class TestFromConfig:
    """Operator configuration drives verification."""

    def test_options_from_config(self):
        config = BundleConfig(
            trusted_keys=["SHA256:abc"], required_roles=["pm"], max_approval_age_seconds=3600,
        )
        options = VerifyOptions.from_config(config, strict=True)

        assert options.require_approvals
        assert options.required_roles == ["pm"]
        assert options.trust_public_keys == ["SHA256:abc"]
        assert options.max_approval_age == timedelta(hours=1)
        assert options.strict

    def test_no_roles_leaves_approvals_off(self):
        assert not VerifyOptions.from_config(BundleConfig()).require_approvals

    def test_unknown_override(self):
        with pytest.raises(TypeError):
            VerifyOptions.from_config(BundleConfig(), stirct=True)

    def test_configured_roles_enforced(self, bundle_path, signer, ed25519_key):
        approve(bundle_path, signer, ed25519_key, "pm", "alice")
        config = BundleConfig(required_roles=["pm", "security"])

        result = BundleValidator.from_config(config).verify(str(bundle_path))

        assert not result.valid
        assert result.missing_roles == ["security"]
        assert result.error_codes == [MISSING_APPROVAL]

    def test_configured_allowed_roles_enforced(self, bundle_path, signer, ed25519_key):
        approve(bundle_path, signer, ed25519_key, "pm", "alice")
        config = BundleConfig(required_roles=["pm"], allowed_roles=["security"])

        result = BundleValidator.from_config(config).verify(str(bundle_path))

        assert result.errors[0].details["reason"] == "ROLE_NOT_ALLOWED"
        assert result.missing_roles == ["pm"]


# ---------------------------------------------------------------------------
# Attestation
# ---------------------------------------------------------------------------


class TestAttestation:
    """KERI attestation verification."""

    def test_missing(self, bundle_path):
        result = BundleValidator(VerifyOptions(require_attestation=True)).verify(str(bundle_path))
        assert result.error_codes == [ATTESTATION_FAILED]
        assert not result.attestation_valid

    def test_valid_warns_without_log(self, project, tmp_path):
        out = tmp_path / "a.gbundle.tgz"
        build_bundle(project, out, attestation_format="in-toto")

        result = BundleValidator(VerifyOptions(require_attestation=True)).verify(str(out))
        assert result.valid
        assert [w.code for w in result.warnings] == [TRANSPARENCY_LOG_MISSING]

    def test_allow_offline(self, project, tmp_path):
        out = tmp_path / "a.gbundle.tgz"
        build_bundle(project, out, attestation_format="slsa")
        options = VerifyOptions(require_attestation=True, allow_offline=True)
        result = BundleValidator(options).verify(str(out))
        assert result.valid
        assert result.warnings == []

    def test_attestation_survives_approvals(self, project, tmp_path, signer, ed25519_key):
        out = tmp_path / "a.gbundle.tgz"
        build_bundle(project, out, attestation_format="in-toto")
        approve(out, signer, ed25519_key, "pm", "alice")
        options = VerifyOptions(require_attestation=True, allow_offline=True)
        assert BundleValidator(options).verify(str(out)).valid

    def test_tamper_breaks_attestation(self, project, tmp_path):
        out = tmp_path / "a.gbundle.tgz"
        build_bundle(project, out, attestation_format="in-toto")
        rewrite_member(out, "spec.yaml", b"A")
        result = BundleValidator(VerifyOptions(require_attestation=True)).verify(str(out))
        assert result.has_error(ATTESTATION_FAILED)
        assert not result.attestation_valid

    def test_signer_allowlist(self, project, tmp_path):
        out = tmp_path / "a.gbundle.tgz"
        build_bundle(project, out)
        generator = KeriAttestationGenerator()
        attach_attestation(out, generator.generate(load_bundle(out)))

        trusted = BundleValidator(
            VerifyOptions(require_attestation=True, allow_offline=True, allowed_signers=[generator.signer_id]),
        )
        assert trusted.verify(str(out)).valid

        untrusted = BundleValidator(
            VerifyOptions(require_attestation=True),
            attestation_verifier=AttestationVerifier(allowed_signers=["Bsomeoneelse"]),
        )
        assert untrusted.verify(str(out)).has_error(ATTESTATION_FAILED)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TestPolicy:
    """Policy boundary."""

    def test_no_evaluator(self, bundle_path):
        result = BundleValidator(VerifyOptions(policy_path="policy.rego")).verify(str(bundle_path))
        assert result.error_codes == [POLICY_EVALUATION_FAILED]
        assert not result.policy_compliant

    def test_compliant(self, bundle_path):
        evaluator = StaticEvaluator(PolicyVerdict(compliant=True, warnings=["soft limit"]))
        result = BundleValidator(VerifyOptions(policy_path="p.rego"), policy_evaluator=evaluator).verify(str(bundle_path))

        assert result.valid
        assert [w.code for w in result.warnings] == [POLICY_WARNING]
        assert evaluator.calls == [("acme/api", [], "p.rego")]

    def test_violation_codes_relayed(self, bundle_path):
        verdict = PolicyVerdict(
            compliant=False,
            violations=[
                PolicyViolation("openai is forbidden", code="FORBIDDEN_PROVIDER", rule="providers"),
                PolicyViolation("budget exceeded"),
            ],
        )
        validator = BundleValidator(VerifyOptions(policy_path="p.rego"), policy_evaluator=StaticEvaluator(verdict))
        result = validator.verify(str(bundle_path))

        assert not result.policy_compliant
        assert result.error_codes == ["FORBIDDEN_PROVIDER", POLICY_VIOLATION]

    def test_noncompliant_without_violations(self, bundle_path):
        validator = BundleValidator(
            VerifyOptions(policy_path="p.rego"),
            policy_evaluator=StaticEvaluator(PolicyVerdict(compliant=False)),
        )
        assert validator.verify(str(bundle_path)).error_codes == [POLICY_VIOLATION]

    def test_evaluator_error(self, bundle_path):
        validator = BundleValidator(
            VerifyOptions(policy_path="p.rego"),
            policy_evaluator=StaticEvaluator(error=RuntimeError("rego parse error at line 3")),
        )
        result = validator.verify(str(bundle_path))
        assert result.error_codes == [POLICY_EVALUATION_FAILED]
        assert "rego parse error at line 3" in result.errors[0].message

    def test_checks_independent(self, bundle_path):
        """Tamper plus policy violation: both reported."""
        rewrite_member(bundle_path, "spec.yaml", b"A")
        validator = BundleValidator(
            VerifyOptions(policy_path="p.rego"),
            policy_evaluator=StaticEvaluator(PolicyVerdict(compliant=False)),
        )
        result = validator.verify(str(bundle_path))
        assert {CHECKSUM_MISMATCH, POLICY_VIOLATION} <= set(result.error_codes)


class TestCrashIsolation:
    """A crashing check is reported, the others still run."""

    def test_attestation_verifier_crash(self, bundle_path):
        class Exploding(AttestationVerifier):
            def verify(self, attestation, current_digest, payload_digest):
                raise ZeroDivisionError("boom")

        generator = KeriAttestationGenerator()
        attach_attestation(bundle_path, generator.generate(load_bundle(bundle_path)))
        validator = BundleValidator(
            VerifyOptions(require_attestation=True),
            attestation_verifier=Exploding(),
        )
        result = validator.verify(str(bundle_path))

        assert result.checksum_valid
        assert not result.attestation_valid
        assert result.error_codes == [INTERNAL_ERROR]

    def test_result_to_dict(self, bundle_path):
        rewrite_member(bundle_path, "spec.yaml", b"A")
        data = BundleValidator().verify(str(bundle_path)).to_dict()
        assert data["valid"] is False
        assert data["errors"][0]["category"] == "integrity"
        assert "computed_digest" in data
