# -*- encoding: utf-8 -*-
"""
Gate - Reduce a ValidationResult to a process exit code.

CI pipelines branch on the exit code, never on message text, so the table
below is fixed. It is evaluated in priority order over the accumulated
error codes and the first matching row wins:

    POLICY_VIOLATION, POLICY_COMPLIANCE_FAILED   -> 20
    DRIFT_DETECTED                               -> 30
    MISSING_APPROVAL, APPROVAL_FAILED            -> 40
    FORBIDDEN_PROVIDER, PROVIDER_NOT_ALLOWED     -> 50
    any other failure, incl. internal errors     -> 60
    valid                                        -> 0

Usage:
    from governed_bundle.gate import Gate
    from governed_bundle.validator import BundleValidator, VerifyOptions

    gate = Gate(BundleValidator(VerifyOptions(require_approvals=True)))
    outcome = gate.evaluate("release.gbundle.tgz")
    sys.exit(int(outcome.exit_code))
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import FrozenSet, Iterable, List, Optional, Tuple

from .approval import Approval
from .errors import (
    APPROVAL_FAILED,
    DRIFT_DETECTED,
    FORBIDDEN_PROVIDER,
    INTERNAL_ERROR,
    MISSING_APPROVAL,
    POLICY_COMPLIANCE_FAILED,
    POLICY_VIOLATION,
    PROVIDER_NOT_ALLOWED,
)
from .validator import INPUT, BundleValidator, ValidationResult

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes emitted by the gate."""
    SUCCESS = 0
    POLICY_VIOLATION = 20
    DRIFT_DETECTED = 30
    MISSING_APPROVAL = 40
    FORBIDDEN_PROVIDER = 50
    FAILURE = 60


EXIT_CODE_PRIORITY: Tuple[Tuple[FrozenSet[str], ExitCode], ...] = (
    (frozenset({POLICY_VIOLATION, POLICY_COMPLIANCE_FAILED}), ExitCode.POLICY_VIOLATION),
    (frozenset({DRIFT_DETECTED}), ExitCode.DRIFT_DETECTED),
    (frozenset({MISSING_APPROVAL, APPROVAL_FAILED}), ExitCode.MISSING_APPROVAL),
    (frozenset({FORBIDDEN_PROVIDER, PROVIDER_NOT_ALLOWED}), ExitCode.FORBIDDEN_PROVIDER),
)


def classify(codes: Iterable[str], valid: bool = False) -> ExitCode:
    """
    Map error codes to an exit code using the fixed priority table.

    Args:
        codes: Accumulated error codes (treated as a set)
        valid: Overall validity; a valid result always maps to SUCCESS
    """
    if valid:
        return ExitCode.SUCCESS
    present = set(codes)
    for group, exit_code in EXIT_CODE_PRIORITY:
        if present & group:
            return exit_code
    return ExitCode.FAILURE


def exit_code_for(result: ValidationResult) -> ExitCode:
    return classify((e.code for e in result.errors), valid=result.valid and not result.errors)


@dataclass
class GateOutcome:
    """Exit code plus the result it was derived from."""
    exit_code: ExitCode
    result: ValidationResult

    @property
    def passed(self) -> bool:
        return self.exit_code == ExitCode.SUCCESS

    @property
    def reasons(self) -> List[str]:
        return [e.message for e in self.result.errors]


class Gate:
    """Automation-facing verification: verify, then classify."""

    def __init__(self, validator: Optional[BundleValidator] = None):
        self.validator = validator or BundleValidator()

    def evaluate(self, bundle_path: str, extra_approvals: Optional[List[Approval]] = None) -> GateOutcome:
        try:
            result = self.validator.verify(bundle_path, extra_approvals)
        except Exception as e:
            logger.exception(f"Gate evaluation of {bundle_path} failed")
            result = ValidationResult(
                valid=False,
                checksum_valid=False,
                approvals_valid=False,
                attestation_valid=False,
                policy_compliant=False,
            )
            result.add_error(INTERNAL_ERROR, f"unexpected error during evaluation: {e}", category=INPUT)

        exit_code = exit_code_for(result)
        if exit_code == ExitCode.SUCCESS:
            logger.info(f"Gate passed for {bundle_path}")
        else:
            logger.warning(f"Gate failed for {bundle_path}: exit {int(exit_code)} ({', '.join(result.error_codes)})")
        return GateOutcome(exit_code=exit_code, result=result)
