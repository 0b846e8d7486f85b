# -*- encoding: utf-8 -*-
"""
Tests for configuration loading.

Verifies:
- Defaults, JSON file, environment precedence
- Validation of bad values and unknown keys
- Signer/verifier construction from config
"""

import json
from datetime import timedelta

import pytest

from governed_bundle.config import (
    CONFIG_FILENAME,
    ENV_MAX_APPROVAL_AGE,
    ENV_SIGNATURE_TYPE,
    ENV_SSH_KEY,
    ENV_TRUSTED_KEYS,
    BundleConfig,
    default_user,
    load_config,
)
from governed_bundle.errors import InputError
from governed_bundle.signing import ApprovalVerifier, GPGBackend, SSHBackend
from governed_bundle.signing.signer import default_backends


class TestLoadConfig:
    """Resolution order: defaults < file < environment."""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(env={})
        assert config == BundleConfig()
        assert config.max_approval_age is None

    def test_cwd_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / CONFIG_FILENAME).write_text(json.dumps({
            "signature_type": "gpg",
            "gpg_key_id": "ops@example.com",
            "max_approval_age_seconds": 3600,
        }))
        config = load_config(env={})
        assert config.signature_type == "gpg"
        assert config.gpg_key_id == "ops@example.com"
        assert config.max_approval_age == timedelta(hours=1)

    def test_env_overrides_file(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"signature_type": "gpg", "ssh_key_path": "/from/file"}))
        config = load_config(path, env={
            ENV_SIGNATURE_TYPE: "SSH",
            ENV_SSH_KEY: "/from/env",
            ENV_TRUSTED_KEYS: "SHA256:a, SHA256:b,",
            ENV_MAX_APPROVAL_AGE: "60",
        })
        assert config.signature_type == "ssh"
        assert config.ssh_key_path == "/from/env"
        assert config.trusted_keys == ["SHA256:a", "SHA256:b"]
        assert config.max_approval_age_seconds == 60

    def test_explicit_missing(self, tmp_path):
        with pytest.raises(InputError, match="not found"):
            load_config(tmp_path / "nope.json", env={})

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text("{oops")
        with pytest.raises(InputError):
            load_config(path, env={})

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text("[1, 2]")
        with pytest.raises(InputError, match="JSON object"):
            load_config(path, env={})

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"signature_typ": "ssh"}))
        with pytest.raises(InputError, match="signature_typ"):
            load_config(path, env={})

    def test_bad_env_age(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(InputError, match=ENV_MAX_APPROVAL_AGE):
            load_config(env={ENV_MAX_APPROVAL_AGE: "a week"})


class TestBundleConfig:
    """Validation and round-trip."""

    def test_round_trip(self):
        config = BundleConfig(trusted_keys=["SHA256:x"], required_roles=["pm"], require_comment=True)
        assert BundleConfig.from_dict(config.to_dict()) == config

    def test_bad_signature_type(self):
        with pytest.raises(InputError):
            BundleConfig(signature_type="x509").validate()

    def test_negative_age(self):
        with pytest.raises(InputError):
            BundleConfig.from_dict({"max_approval_age_seconds": -1})

    def test_wrong_type(self):
        with pytest.raises(InputError):
            BundleConfig.from_dict({"max_approval_age_seconds": "soon"})


class TestFromConfig:
    """Components built from configuration."""

    def test_default_backends(self):
        backends = default_backends(BundleConfig(gpg_binary="gpg2", gpg_key_id="K"))
        assert isinstance(backends["ssh"], SSHBackend)
        assert isinstance(backends["gpg"], GPGBackend)
        assert backends["gpg"].binary == "gpg2"
        assert backends["gpg"].key_id == "K"

    def test_verifier_trusts_configured_keys(self):
        verifier = ApprovalVerifier.from_config(BundleConfig(trusted_keys=["abcd ef01"]))
        assert verifier.trusted_fingerprints == ["ABCDEF01"]


class TestDefaultUser:

    def test_order(self):
        assert default_user({"USERNAME": "win", "LOGNAME": "log"}) == "win"
        assert default_user({"USER": "u", "USERNAME": "win"}) == "u"

    def test_none(self):
        assert default_user({}) == ""
