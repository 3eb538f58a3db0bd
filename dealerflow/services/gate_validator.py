"""
Gate Validator — Definition-of-Done enforcement.

Pure functions: no store access, no logging side effects beyond diagnostics.
Policy is a strict AND over the stage requirements in definition order; every
unmet requirement is collected so the caller can present one complete
checklist instead of the first gap.

Usage:
    from dealerflow.services.gate_validator import validate

    result = validate(snapshot, stage.requirements)
    if not result.valid:
        raise GateNotSatisfied(stage.stage_id, result.failed_requirements)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from dealerflow.domain import Blocker, StageDefinition
from dealerflow.services.requirements import Requirement

OPEN_BLOCKER_PREFIX = "Open blocker: "


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    failed_requirements: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "failed_requirements": list(self.failed_requirements),
        }


def validate(snapshot: Mapping[str, Any] | None, requirements: Iterable[Requirement]) -> ValidationResult:
    """Evaluate every requirement against the record snapshot."""
    facts = snapshot or {}
    failed = tuple(r.label for r in requirements if not r.is_satisfied(facts))
    return ValidationResult(valid=not failed, failed_requirements=failed)


def validate_stage(
    stage: StageDefinition,
    snapshot: Mapping[str, Any] | None,
    open_blockers: Iterable[Blocker] = (),
) -> ValidationResult:
    """Stage gate: requirements, plus open blockers when the stage gates on them."""
    result = validate(snapshot, stage.requirements)
    if not stage.blockers_gate_advancement:
        return result

    blocker_failures = tuple(
        f"{OPEN_BLOCKER_PREFIX}{b.description}" for b in open_blockers if not b.resolved
    )
    if not blocker_failures:
        return result
    return ValidationResult(
        valid=False,
        failed_requirements=result.failed_requirements + blocker_failures,
    )
