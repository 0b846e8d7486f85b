# -*- encoding: utf-8 -*-
"""
Bundle Configuration - Defaults, JSON config file, environment overrides.

Resolution order (later wins):
1. Built-in defaults
2. JSON file: explicit path, else ``governed-bundle.json`` in the working directory
3. Environment variables (GOVERNED_BUNDLE_*)

Usage:
    from governed_bundle.config import load_config

    config = load_config()
    signer = ApprovalSigner.from_config(config)
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import InputError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "governed-bundle.json"
ENV_PREFIX = "GOVERNED_BUNDLE_"

ENV_SIGNATURE_TYPE = "GOVERNED_BUNDLE_SIGNATURE_TYPE"
ENV_SSH_KEY = "GOVERNED_BUNDLE_SSH_KEY"
ENV_GPG_KEY = "GOVERNED_BUNDLE_GPG_KEY"
ENV_TRUSTED_KEYS = "GOVERNED_BUNDLE_TRUSTED_KEYS"
ENV_MAX_APPROVAL_AGE = "GOVERNED_BUNDLE_MAX_APPROVAL_AGE"
ENV_GPG_BINARY = "GOVERNED_BUNDLE_GPG_BINARY"

SIGNATURE_TYPES = ("ssh", "gpg")


@dataclass
class BundleConfig:
    """Operator settings shared by signing and verification."""
    signature_type: str = "ssh"
    ssh_key_path: str = ""
    gpg_key_id: str = ""
    gpg_binary: str = "gpg"
    trusted_keys: List[str] = field(default_factory=list)
    max_approval_age_seconds: int = 0  # 0 disables the age check
    required_roles: List[str] = field(default_factory=list)
    allowed_roles: List[str] = field(default_factory=list)
    require_comment: bool = False

    @property
    def max_approval_age(self) -> Optional[timedelta]:
        if self.max_approval_age_seconds <= 0:
            return None
        return timedelta(seconds=self.max_approval_age_seconds)

    def validate(self) -> None:
        """Raise InputError on values no component could act on."""
        if self.signature_type not in SIGNATURE_TYPES:
            raise InputError(
                f"unsupported signature type: {self.signature_type}",
                operation="config",
                suggestion=f"Use one of: {', '.join(SIGNATURE_TYPES)}",
            )
        if self.max_approval_age_seconds < 0:
            raise InputError(
                "max approval age must not be negative",
                operation="config",
            )
        if not self.gpg_binary:
            raise InputError("gpg binary must not be empty", operation="config")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature_type": self.signature_type,
            "ssh_key_path": self.ssh_key_path,
            "gpg_key_id": self.gpg_key_id,
            "gpg_binary": self.gpg_binary,
            "trusted_keys": list(self.trusted_keys),
            "max_approval_age_seconds": self.max_approval_age_seconds,
            "required_roles": list(self.required_roles),
            "allowed_roles": list(self.allowed_roles),
            "require_comment": self.require_comment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BundleConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise InputError(
                f"unknown configuration keys: {', '.join(unknown)}",
                operation="config",
            )
        try:
            config = cls(
                signature_type=str(data.get("signature_type", "ssh")),
                ssh_key_path=str(data.get("ssh_key_path", "")),
                gpg_key_id=str(data.get("gpg_key_id", "")),
                gpg_binary=str(data.get("gpg_binary", "gpg")),
                trusted_keys=[str(k) for k in data.get("trusted_keys", [])],
                max_approval_age_seconds=int(data.get("max_approval_age_seconds", 0)),
                required_roles=[str(r) for r in data.get("required_roles", [])],
                allowed_roles=[str(r) for r in data.get("allowed_roles", [])],
                require_comment=bool(data.get("require_comment", False)),
            )
        except (TypeError, ValueError) as e:
            raise InputError(f"invalid configuration value: {e}", operation="config") from e
        config.validate()
        return config


def _apply_env(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    merged = dict(data)
    if env.get(ENV_SIGNATURE_TYPE):
        merged["signature_type"] = env[ENV_SIGNATURE_TYPE].strip().lower()
    if env.get(ENV_SSH_KEY):
        merged["ssh_key_path"] = env[ENV_SSH_KEY]
    if env.get(ENV_GPG_KEY):
        merged["gpg_key_id"] = env[ENV_GPG_KEY]
    if env.get(ENV_GPG_BINARY):
        merged["gpg_binary"] = env[ENV_GPG_BINARY]
    if env.get(ENV_TRUSTED_KEYS):
        merged["trusted_keys"] = [k.strip() for k in env[ENV_TRUSTED_KEYS].split(",") if k.strip()]
    if env.get(ENV_MAX_APPROVAL_AGE):
        raw = env[ENV_MAX_APPROVAL_AGE]
        try:
            merged["max_approval_age_seconds"] = int(raw)
        except ValueError as e:
            raise InputError(
                f"{ENV_MAX_APPROVAL_AGE} must be an integer number of seconds, got {raw!r}",
                operation="config",
            ) from e
    return merged


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> BundleConfig:
    """
    Load configuration from defaults, file and environment.

    Args:
        path: Explicit JSON config path. Must exist when given.
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated BundleConfig

    Raises:
        InputError: Missing explicit file, malformed JSON, invalid values
    """
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.is_file():
            raise InputError(f"config file not found: {config_path}", operation="config")
    else:
        config_path = Path.cwd() / CONFIG_FILENAME

    if config_path.is_file():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise InputError(
                f"cannot read config file {config_path}: {e}", operation="config",
            ) from e
        if not isinstance(data, dict):
            raise InputError(f"config file {config_path} must hold a JSON object", operation="config")
        logger.debug(f"Loaded bundle config from {config_path}")

    return BundleConfig.from_dict(_apply_env(data, env))


def default_user(env: Optional[Mapping[str, str]] = None) -> str:
    """Best-effort local user name from USER, USERNAME or LOGNAME."""
    env = os.environ if env is None else env
    for name in ("USER", "USERNAME", "LOGNAME"):
        if env.get(name):
            return env[name]
    return ""
