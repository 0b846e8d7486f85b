# -*- encoding: utf-8 -*-
"""
Signature Backends - Key material for approval signatures.

Each backend turns bytes into a detached signature plus a key fingerprint,
and checks a signature given a fingerprint. Digest binding and message
canonicalization live in signer.py and never depend on the backend.

- SSHBackend: OpenSSH/PEM private keys via ``cryptography``
  (Ed25519, ECDSA P-256/384/521, RSA PKCS#1 v1.5 SHA-256).
  Fingerprints use the OpenSSH form ``SHA256:<base64, unpadded>``.
- GPGBackend: the ``gpg`` binary, detached ASCII-armored signatures.
"""

import base64
import binascii
import hashlib
import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from ..approval import SignatureType
from ..errors import (
    INVALID_SIGNATURE,
    SigningError,
    UntrustedKey,
    VerificationError,
)

logger = logging.getLogger(__name__)

DEFAULT_SSH_KEYS = ("id_ed25519", "id_rsa", "id_ecdsa")
GPG_TIMEOUT = 60


@dataclass
class SignedPayload:
    """Output of SignatureBackend.sign()."""
    signature: str
    fingerprint: str
    public_key: str = ""


class SignatureBackend(ABC):
    """Pluggable signing/verification capability for one signature type."""

    signature_type: SignatureType

    @abstractmethod
    def sign(self, data: bytes, key: str = "") -> SignedPayload:
        """Sign ``data`` with ``key`` (path or key ID; empty means default)."""

    @abstractmethod
    def verify_with(
        self,
        fingerprint: str,
        data: bytes,
        signature: str,
        public_key: str = "",
    ) -> bool:
        """True iff ``signature`` over ``data`` was made by the key ``fingerprint``."""


# ---------------------------------------------------------------------------
# SSH
# ---------------------------------------------------------------------------


def ssh_fingerprint(public_key: str) -> str:
    """OpenSSH SHA256 fingerprint of a ``<type> <base64> [comment]`` line."""
    fields = public_key.strip().split()
    if len(fields) < 2:
        raise ValueError("not an OpenSSH public key line")
    blob = base64.b64decode(fields[1], validate=True)
    digest = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii")
    return "SHA256:" + digest.rstrip("=")


def is_ssh_public_key(text: str) -> bool:
    return text.strip().startswith(("ssh-ed25519 ", "ssh-rsa ", "ecdsa-sha2-"))


def default_ssh_key(home: Optional[Path] = None) -> Optional[Path]:
    """First existing conventional key under ``~/.ssh``, or None."""
    ssh_dir = (home or Path.home()) / ".ssh"
    for name in DEFAULT_SSH_KEYS:
        candidate = ssh_dir / name
        if candidate.is_file():
            return candidate
    return None


def _ecdsa_hash(curve: ec.EllipticCurve) -> hashes.HashAlgorithm:
    if curve.key_size <= 256:
        return hashes.SHA256()
    if curve.key_size <= 384:
        return hashes.SHA384()
    return hashes.SHA512()


class SSHBackend(SignatureBackend):
    """
    Sign with an SSH private key file; verify with an OpenSSH public key.

    Verification uses the public key embedded in the approval when present,
    otherwise a key registered via trust_public_key(). An embedded key must
    hash to the claimed fingerprint.
    """

    signature_type = SignatureType.SSH

    def __init__(
        self,
        default_key_path: str = "",
        passphrase: Optional[bytes] = None,
        home: Optional[Path] = None,
    ):
        self._default_key_path = default_key_path
        self._passphrase = passphrase
        self._home = home
        self._known_keys: Dict[str, str] = {}

    def trust_public_key(self, public_key: str) -> str:
        """Register an OpenSSH public key line; returns its fingerprint."""
        fingerprint = ssh_fingerprint(public_key)
        self._known_keys[fingerprint] = public_key.strip()
        return fingerprint

    def resolve_key_path(self, key: str = "") -> Path:
        if key:
            path = Path(key).expanduser()
            if not path.is_file():
                raise SigningError(f"SSH key not found: {path}")
            return path
        if self._default_key_path:
            return self.resolve_key_path(self._default_key_path)
        found = default_ssh_key(self._home)
        if found is None:
            raise SigningError(
                f"no SSH key found (looked for {', '.join(DEFAULT_SSH_KEYS)} in ~/.ssh)"
            )
        return found

    def _load_private_key(self, path: Path):
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise SigningError(f"cannot read SSH key {path}: {e}") from e
        try:
            if b"BEGIN OPENSSH PRIVATE KEY" in raw:
                return serialization.load_ssh_private_key(raw, password=self._passphrase)
            return serialization.load_pem_private_key(raw, password=self._passphrase)
        except TypeError as e:
            # Raised for encrypted keys loaded without a passphrase
            raise SigningError(f"SSH key {path} requires a passphrase: {e}") from e
        except (ValueError, UnsupportedAlgorithm) as e:
            raise SigningError(f"cannot parse SSH key {path}: {e}") from e

    def sign(self, data: bytes, key: str = "") -> SignedPayload:
        path = self.resolve_key_path(key)
        private_key = self._load_private_key(path)

        if isinstance(private_key, ed25519.Ed25519PrivateKey):
            raw_sig = private_key.sign(data)
        elif isinstance(private_key, rsa.RSAPrivateKey):
            raw_sig = private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(private_key, ec.EllipticCurvePrivateKey):
            raw_sig = private_key.sign(data, ec.ECDSA(_ecdsa_hash(private_key.curve)))
        else:
            raise SigningError(
                f"unsupported SSH key type: {type(private_key).__name__}"
            )

        public_key = private_key.public_key().public_bytes(
            serialization.Encoding.OpenSSH,
            serialization.PublicFormat.OpenSSH,
        ).decode("ascii")
        fingerprint = ssh_fingerprint(public_key)
        logger.debug(f"Signed {len(data)} bytes with SSH key {path} ({fingerprint})")
        return SignedPayload(
            signature=base64.b64encode(raw_sig).decode("ascii"),
            fingerprint=fingerprint,
            public_key=public_key,
        )

    def verify_with(
        self,
        fingerprint: str,
        data: bytes,
        signature: str,
        public_key: str = "",
    ) -> bool:
        key_text = public_key or self._known_keys.get(fingerprint, "")
        if not key_text:
            raise UntrustedKey(f"no public key available for fingerprint {fingerprint}")

        try:
            if ssh_fingerprint(key_text) != fingerprint:
                logger.warning(f"Embedded SSH key does not match fingerprint {fingerprint}")
                return False
            key = serialization.load_ssh_public_key(key_text.encode("ascii"))
            raw_sig = base64.b64decode(signature, validate=True)
        except (ValueError, binascii.Error, UnsupportedAlgorithm) as e:
            logger.warning(f"Malformed SSH key or signature: {e}")
            return False

        try:
            if isinstance(key, ed25519.Ed25519PublicKey):
                key.verify(raw_sig, data)
            elif isinstance(key, rsa.RSAPublicKey):
                key.verify(raw_sig, data, padding.PKCS1v15(), hashes.SHA256())
            elif isinstance(key, ec.EllipticCurvePublicKey):
                key.verify(raw_sig, data, ec.ECDSA(_ecdsa_hash(key.curve)))
            else:
                return False
        except InvalidSignature:
            return False
        return True


# ---------------------------------------------------------------------------
# GPG
# ---------------------------------------------------------------------------


def normalize_gpg_fingerprint(fingerprint: str) -> str:
    return fingerprint.replace(" ", "").upper()


def _parse_colon_fingerprint(output: str) -> str:
    for line in output.splitlines():
        fields = line.split(":")
        if fields[0] == "fpr" and len(fields) > 9 and fields[9]:
            return fields[9]
    return ""


def _parse_validsig(status: str) -> List[str]:
    """Fingerprints from ``[GNUPG:] VALIDSIG`` lines (signing and primary key)."""
    fingerprints = []
    for line in status.splitlines():
        parts = line.split()
        if len(parts) >= 3 and parts[0] == "[GNUPG:]" and parts[1] == "VALIDSIG":
            fingerprints.append(parts[2])
            if len(parts) >= 12:
                fingerprints.append(parts[11])
    return fingerprints


class GPGBackend(SignatureBackend):
    """
    Sign and verify through the ``gpg`` binary.

    With an embedded public key, verification imports it into a throwaway
    GNUPGHOME so the caller's keyring is never consulted or modified.
    """

    signature_type = SignatureType.GPG

    def __init__(
        self,
        binary: str = "gpg",
        key_id: str = "",
        passphrase_file: str = "",
        homedir: str = "",
    ):
        self.binary = binary
        self.key_id = key_id
        self.passphrase_file = passphrase_file
        self.homedir = homedir

    def _base_cmd(self, homedir: str = "") -> List[str]:
        cmd = [self.binary, "--batch", "--no-tty"]
        home = homedir or self.homedir
        if home:
            cmd += ["--homedir", home]
        return cmd

    def _run(self, cmd: Sequence[str], input: Optional[bytes] = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            list(cmd),
            input=input,
            capture_output=True,
            timeout=GPG_TIMEOUT,
        )

    def fingerprint(self, key_id: str = "") -> str:
        cmd = self._base_cmd() + ["--with-colons", "--fingerprint", "--list-secret-keys"]
        if key_id:
            cmd.append(key_id)
        result = self._run(cmd)
        fpr = _parse_colon_fingerprint(result.stdout.decode("utf-8", "replace"))
        if result.returncode != 0 or not fpr:
            raise SigningError(f"no GPG secret key found{f' for {key_id}' if key_id else ''}")
        return fpr

    def sign(self, data: bytes, key: str = "") -> SignedPayload:
        key_id = key or self.key_id
        cmd = self._base_cmd() + ["--detach-sign", "--armor"]
        if key_id:
            cmd += ["--local-user", key_id]
        if self.passphrase_file:
            cmd += ["--pinentry-mode", "loopback", "--passphrase-file", self.passphrase_file]
        cmd += ["--output", "-"]

        try:
            result = self._run(cmd, input=data)
            if result.returncode != 0:
                stderr = result.stderr.decode("utf-8", "replace")
                lowered = stderr.lower()
                if "no secret key" in lowered or "no default secret key" in lowered:
                    raise SigningError(f"no usable GPG key{f' for {key_id}' if key_id else ''}")
                if "passphrase" in lowered or "pinentry" in lowered or "inappropriate ioctl" in lowered:
                    raise SigningError("GPG key requires a passphrase that is not available")
                raise SigningError(f"gpg signing failed: {stderr.strip()}")

            fingerprint = self.fingerprint(key_id)
            export = self._run(self._base_cmd() + ["--armor", "--export", fingerprint])
        except FileNotFoundError as e:
            raise SigningError(f"gpg binary not found: {self.binary}") from e
        except subprocess.TimeoutExpired as e:
            raise SigningError("gpg timed out while signing") from e

        public_key = export.stdout.decode("ascii", "replace") if export.returncode == 0 else ""
        logger.debug(f"Signed {len(data)} bytes with GPG key {fingerprint}")
        return SignedPayload(
            signature=result.stdout.decode("ascii"),
            fingerprint=fingerprint,
            public_key=public_key,
        )

    def verify_with(
        self,
        fingerprint: str,
        data: bytes,
        signature: str,
        public_key: str = "",
    ) -> bool:
        expected = normalize_gpg_fingerprint(fingerprint)
        try:
            with tempfile.TemporaryDirectory(prefix="governed-gpg-") as tmp:
                homedir = ""
                if public_key:
                    homedir = os.path.join(tmp, "gnupg")
                    os.mkdir(homedir, 0o700)
                    imported = self._run(
                        self._base_cmd(homedir) + ["--import"],
                        input=public_key.encode("utf-8"),
                    )
                    if imported.returncode != 0:
                        logger.warning(f"Could not import embedded GPG key for {fingerprint}")
                        return False

                sig_path = os.path.join(tmp, "approval.sig")
                Path(sig_path).write_text(signature, encoding="utf-8")
                result = self._run(
                    self._base_cmd(homedir) + ["--status-fd", "1", "--verify", sig_path, "-"],
                    input=data,
                )
        except FileNotFoundError as e:
            raise VerificationError(
                f"gpg binary not found: {self.binary}", code=INVALID_SIGNATURE,
            ) from e
        except subprocess.TimeoutExpired as e:
            raise VerificationError("gpg timed out while verifying", code=INVALID_SIGNATURE) from e

        if result.returncode != 0:
            return False
        signers = [normalize_gpg_fingerprint(f) for f in _parse_validsig(result.stdout.decode("utf-8", "replace"))]
        return expected in signers


