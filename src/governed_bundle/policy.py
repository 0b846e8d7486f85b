# -*- encoding: utf-8 -*-
"""
Policy Boundary - Opaque policy evaluation over a bundle.

The policy language is not defined here. An evaluator receives the manifest,
the approvals and the policy path, and returns a verdict. Violation codes
are relayed to the validator unchanged, so an evaluator can report
POLICY_VIOLATION, DRIFT_DETECTED, FORBIDDEN_PROVIDER and so on, and the gate
classifies them.

Usage:
    class MyEvaluator(PolicyEvaluator):
        def evaluate(self, manifest, approvals, policy_path):
            return PolicyVerdict(compliant=True)

    validator = BundleValidator(policy_evaluator=MyEvaluator())
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .approval import Approval
from .errors import POLICY_VIOLATION, PolicyError
from .manifest import BundleManifest

logger = logging.getLogger(__name__)


@dataclass
class PolicyViolation:
    """One rule the bundle breaks."""
    message: str
    code: str = POLICY_VIOLATION
    rule: str = ""
    field: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "rule": self.rule, "field": self.field}


@dataclass
class PolicyVerdict:
    """Evaluator output."""
    compliant: bool
    violations: List[PolicyViolation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compliant": self.compliant,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": list(self.warnings),
        }


class PolicyEvaluator(ABC):
    """External policy engine."""

    @abstractmethod
    def evaluate(
        self,
        manifest: BundleManifest,
        approvals: List[Approval],
        policy_path: str,
    ) -> PolicyVerdict:
        """Evaluate ``manifest`` and ``approvals`` against the policy at ``policy_path``."""


def evaluate_policy(
    evaluator: PolicyEvaluator,
    manifest: BundleManifest,
    approvals: List[Approval],
    policy_path: str,
) -> PolicyVerdict:
    """
    Run ``evaluator`` and normalize its outcome.

    A non-compliant verdict with no violations gets a generic one so callers
    always have a code to branch on.

    Raises:
        PolicyError: the evaluator raised; its message is relayed verbatim
    """
    try:
        verdict = evaluator.evaluate(manifest, list(approvals), policy_path)
    except PolicyError:
        raise
    except Exception as e:
        raise PolicyError(str(e), policy_path=policy_path) from e

    if not verdict.compliant and not verdict.violations:
        verdict.violations.append(PolicyViolation(f"bundle does not comply with {policy_path}"))
    if verdict.violations:
        verdict.compliant = False
    logger.debug(f"Policy {policy_path}: compliant={verdict.compliant}, {len(verdict.violations)} violation(s)")
    return verdict
