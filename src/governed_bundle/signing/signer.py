# -*- encoding: utf-8 -*-
"""
Approval Signer / Verifier - Digest-bound, role-scoped sign-off.

The signer produces an Approval whose signature covers the canonical message
for a bundle digest. The verifier rebuilds that message with the digest the
*caller* supplies (the bundle's current digest), so an approval signed for
digest D1 never verifies against content whose digest is D2.

Usage:
    from governed_bundle.signing import ApprovalSigner, ApprovalVerifier

    signer = ApprovalSigner()
    approval = signer.sign_approval(
        bundle_digest=bundle.current_digest(),
        role="security",
        user="alice",
        comment="reviewed threat model",
        signature_type="ssh",
        key_path="~/.ssh/id_ed25519",
    )

    verifier = ApprovalVerifier(trusted_keys=["SHA256:..."])
    verifier.verify_approval(approval, bundle.current_digest())
    status = verifier.verify_all(bundle.approvals, bundle.current_digest(), ["pm", "security"])
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..approval import Approval, SignatureType, canonical_message
from ..bundle import ApprovalFailure, ApprovalStatus
from ..config import BundleConfig
from ..errors import (
    COMMENT_REQUIRED,
    ROLE_NOT_ALLOWED,
    UNSUPPORTED_SIGNATURE_TYPE,
    ApprovalExpired,
    InvalidSignature,
    SigningError,
    UnsupportedSignatureType,
    UntrustedKey,
    VerificationError,
)
from ..manifest import truncate_seconds
from .backends import (
    GPGBackend,
    SignatureBackend,
    SSHBackend,
    is_ssh_public_key,
    normalize_gpg_fingerprint,
    ssh_fingerprint,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_backends(config: Optional[BundleConfig] = None) -> Dict[str, SignatureBackend]:
    config = config or BundleConfig()
    return {
        SignatureType.SSH.value: SSHBackend(default_key_path=config.ssh_key_path),
        SignatureType.GPG.value: GPGBackend(binary=config.gpg_binary, key_id=config.gpg_key_id),
    }


def _type_value(signature_type: Union[SignatureType, str]) -> str:
    if isinstance(signature_type, SignatureType):
        return signature_type.value
    return str(signature_type).strip().lower()


def _normalize_fingerprint(fingerprint: str) -> str:
    if fingerprint.startswith("SHA256:"):
        return fingerprint
    return normalize_gpg_fingerprint(fingerprint)


# ---------------------------------------------------------------------------
# ApprovalSigner
# ---------------------------------------------------------------------------


class ApprovalSigner:
    """Creates signed approvals bound to a bundle digest."""

    def __init__(
        self,
        backends: Optional[Dict[str, SignatureBackend]] = None,
        clock: Optional[Clock] = None,
    ):
        self._backends = backends if backends is not None else default_backends()
        self._clock = clock or _utcnow

    @classmethod
    def from_config(cls, config: BundleConfig) -> "ApprovalSigner":
        return cls(backends=default_backends(config))

    def sign_approval(
        self,
        bundle_digest: str,
        role: str,
        user: str,
        comment: str = "",
        signature_type: Union[SignatureType, str] = SignatureType.SSH,
        key_path: str = "",
    ) -> Approval:
        """
        Sign an approval of ``bundle_digest`` by ``user`` acting as ``role``.

        Args:
            bundle_digest: Integrity digest ("sha256:<hex>") being approved
            role: Approving role (e.g. "pm", "security")
            user: Approver identity
            comment: Free-text comment, covered by the signature
            signature_type: "ssh" or "gpg"
            key_path: SSH key path or GPG key ID; empty uses the default key

        Returns:
            Approval carrying signature, fingerprint and public key

        Raises:
            SigningError: missing fields, unsupported type, no usable key,
                passphrase unavailable, unsupported key type
        """
        missing = [name for name, value in (
            ("bundle_digest", bundle_digest), ("role", role), ("user", user),
        ) if not value]
        if missing:
            raise SigningError(f"missing required approval fields: {', '.join(missing)}", role, user)

        type_value = _type_value(signature_type)
        backend = self._backends.get(type_value)
        if backend is None:
            raise SigningError(
                f"unsupported signature type: {type_value}",
                role, user, code=UNSUPPORTED_SIGNATURE_TYPE,
            )

        signed_at = truncate_seconds(self._clock())
        message = canonical_message(bundle_digest, role, user, signed_at, comment)
        try:
            payload = backend.sign(message, key_path)
        except SigningError as e:
            e.role, e.user = role, user
            raise

        logger.info(f"Signed approval {role}:{user} for {bundle_digest[:19]}... ({type_value})")
        return Approval(
            bundle_digest=bundle_digest,
            role=role,
            user=user,
            comment=comment,
            signature_type=type_value,
            signature=payload.signature,
            public_key_fingerprint=payload.fingerprint,
            public_key=payload.public_key,
            signed_at=signed_at,
        )


# ---------------------------------------------------------------------------
# ApprovalVerifier
# ---------------------------------------------------------------------------


class ApprovalVerifier:
    """
    Verifies approvals against a caller-supplied current digest.

    Signature validity is checked first; the optional policies (trusted
    keys, max age, allowed roles, required comment) apply afterwards.

    ``trusted_keys`` accepts fingerprints (OpenSSH ``SHA256:...`` or GPG hex)
    and OpenSSH public key lines. Public key lines are also registered with
    the SSH backend so approvals without embedded key material can verify.
    """

    def __init__(
        self,
        backends: Optional[Dict[str, SignatureBackend]] = None,
        trusted_keys: Optional[Iterable[str]] = None,
        max_age: Optional[timedelta] = None,
        allowed_roles: Optional[Iterable[str]] = None,
        require_comment: bool = False,
        clock: Optional[Clock] = None,
    ):
        self._backends = backends if backends is not None else default_backends()
        self._max_age = max_age
        self._allowed_roles = set(allowed_roles or [])
        self._require_comment = require_comment
        self._clock = clock or _utcnow
        self._trusted: set = set()
        for entry in trusted_keys or []:
            self.trust(entry)

    @classmethod
    def from_config(cls, config: BundleConfig) -> "ApprovalVerifier":
        return cls(
            backends=default_backends(config),
            trusted_keys=config.trusted_keys,
            max_age=config.max_approval_age,
            allowed_roles=config.allowed_roles,
            require_comment=config.require_comment,
        )

    def trust(self, entry: str) -> str:
        """Add a fingerprint or OpenSSH public key to the allowlist."""
        entry = entry.strip()
        if is_ssh_public_key(entry):
            ssh = self._backends.get(SignatureType.SSH.value)
            if isinstance(ssh, SSHBackend):
                fingerprint = ssh.trust_public_key(entry)
            else:
                fingerprint = ssh_fingerprint(entry)
        else:
            fingerprint = _normalize_fingerprint(entry)
        self._trusted.add(fingerprint)
        return fingerprint

    @property
    def trusted_fingerprints(self) -> List[str]:
        return sorted(self._trusted)

    def verify_approval(self, approval: Approval, current_digest: str) -> None:
        """
        Verify ``approval`` against ``current_digest``.

        The approval's own ``bundle_digest`` claim is never trusted; only
        its role, user, signed_at and comment feed the canonical message.

        Raises:
            UnsupportedSignatureType: no backend for the signature type
            InvalidSignature: malformed approval or signature mismatch
            UntrustedKey: fingerprint not on the allowlist
            ApprovalExpired: older than max_age
            VerificationError: role not allowed, or required comment missing
        """
        role, user = approval.role, approval.user
        type_value = _type_value(approval.signature_type)
        backend = self._backends.get(type_value)
        if backend is None:
            raise UnsupportedSignatureType(
                f"unsupported signature type: {approval.signature_type}", role, user,
            )

        problems = approval.validate()
        if problems:
            raise InvalidSignature(
                "malformed approval: " + "; ".join(p.message for p in problems), role, user,
            )

        message = approval.message_for(current_digest)
        try:
            ok = backend.verify_with(
                approval.public_key_fingerprint,
                message,
                approval.signature,
                approval.public_key,
            )
        except VerificationError as e:
            e.role, e.user = role, user
            raise
        if not ok:
            hint = ""
            if approval.bundle_digest != current_digest:
                hint = f" (approval was signed for {approval.bundle_digest}, bundle digest is now {current_digest})"
            raise InvalidSignature(f"signature verification failed for {role}:{user}{hint}", role, user)

        if self._trusted and _normalize_fingerprint(approval.public_key_fingerprint) not in self._trusted:
            raise UntrustedKey(
                f"key {approval.public_key_fingerprint} for {role}:{user} is not trusted", role, user,
            )

        if approval.is_expired(self._max_age, self._clock()):
            raise ApprovalExpired(
                f"approval {role}:{user} signed {approval.signed_at.isoformat()} exceeds max age {self._max_age}",
                role, user,
            )

        if self._allowed_roles and role not in self._allowed_roles:
            raise VerificationError(
                f"role {role!r} may not approve bundles", role, user, code=ROLE_NOT_ALLOWED,
            )

        if self._require_comment and not approval.comment.strip():
            raise VerificationError(
                f"approval {role}:{user} has no comment", role, user, code=COMMENT_REQUIRED,
            )

    def verify_all(
        self,
        approvals: Iterable[Approval],
        current_digest: str,
        required_roles: Iterable[str] = (),
    ) -> ApprovalStatus:
        """Verify every approval; report valid ones, failures and missing roles."""
        status = ApprovalStatus(required_roles=sorted(set(required_roles)))
        for approval in approvals:
            try:
                self.verify_approval(approval, current_digest)
            except VerificationError as e:
                logger.warning(f"Approval {approval.role}:{approval.user} failed: {e.message}")
                status.failures.append(ApprovalFailure(approval, e))
            else:
                status.valid.append(approval)
        return status
