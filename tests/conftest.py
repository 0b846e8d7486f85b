# -*- encoding: utf-8 -*-
"""Shared fixtures: project trees, SSH keys, built bundles."""

from datetime import datetime, timezone
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from governed_bundle.archive import pack, read_members
from governed_bundle.builder import BuildOptions, BundleBuilder
from governed_bundle.signing import ApprovalSigner, SSHBackend


FIXED_CREATED = datetime(2025, 3, 14, 15, 9, 26, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def write_ssh_key(path: Path, key, password: bytes = None) -> Path:
    """
    Write ``key`` as a private key file.

    Unencrypted keys use the OpenSSH container; encrypted ones use PKCS#8
    PEM so no bcrypt KDF is involved.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if password:
        raw = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(password),
        )
    else:
        raw = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.OpenSSH,
            serialization.NoEncryption(),
        )
    path.write_bytes(raw)
    return path


def rewrite_member(archive: Path, name: str, data: bytes) -> None:
    """Replace one archive member in place, bypassing the manifest."""
    members = read_members(archive)
    members[name] = data
    archive.write_bytes(pack(members))


def build_bundle(project: Path, output: Path, **overrides):
    options = dict(
        spec_path=str(project / "spec.yaml"),
        policy_paths=[str(project / "policy.yaml")],
        bundle_id="acme/api",
        version="1.0.0",
        created=FIXED_CREATED,
        base_dir=str(project),
    )
    options.update(overrides)
    return BundleBuilder(BuildOptions(**options)).build(str(output))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def project(tmp_path):
    """Minimal project: spec.yaml = "a", policy.yaml = "b"."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "spec.yaml").write_text("a")
    (root / "policy.yaml").write_text("b")
    return root


@pytest.fixture
def bundle_path(project, tmp_path):
    out = tmp_path / "dist" / "acme-api.gbundle.tgz"
    build_bundle(project, out)
    return out


@pytest.fixture
def ed25519_key(tmp_path):
    return write_ssh_key(tmp_path / "keys" / "id_ed25519", ed25519.Ed25519PrivateKey.generate())


@pytest.fixture
def rsa_key(tmp_path):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return write_ssh_key(tmp_path / "keys" / "id_rsa", key)


@pytest.fixture
def ecdsa_key(tmp_path):
    return write_ssh_key(tmp_path / "keys" / "id_ecdsa", ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture
def signer(tmp_path):
    # No fallback to the real ~/.ssh during tests
    return ApprovalSigner(backends={"ssh": SSHBackend(home=tmp_path / "home")})
