"""
Pre-approval check validation.

An approval cannot be granted unless every required check has a passing
result. Check types that are not required never block.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from storymap.models.domain import CheckStatus


@dataclass
class ApprovalGateResult:
    can_approve: bool
    errors: List[str] = field(default_factory=list)
    missing_checks: List[str] = field(default_factory=list)
    failed_checks: List[str] = field(default_factory=list)


def _field(record: Any, name: str) -> Any:
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def latest_by_type(recorded_checks: Iterable[Any]) -> Dict[str, Any]:
    """Most recent record per check type (records are in execution order)."""
    latest: Dict[str, Any] = {}
    for record in recorded_checks:
        latest[_field(record, "check_type")] = record
    return latest


def validate_approval_gates(
    required_checks: Sequence[str],
    recorded_checks: Iterable[Any],
) -> ApprovalGateResult:
    """
    Evaluate required checks against recorded check results.

    ``recorded_checks`` may be RunCheck objects or dicts with ``check_type``
    and ``status``; when a type appears more than once the last one wins.
    Skipped required checks block approval without being counted as failed.
    """
    latest = latest_by_type(recorded_checks)
    result = ApprovalGateResult(can_approve=True)

    for check_type in required_checks:
        record = latest.get(check_type)
        if record is None:
            result.missing_checks.append(check_type)
            result.errors.append(f"Required check '{check_type}' has not been executed")
            continue
        status = _field(record, "status")
        if status == CheckStatus.FAILED:
            result.failed_checks.append(check_type)
            result.errors.append(f"Required check '{check_type}' failed")
        elif status == CheckStatus.SKIPPED:
            result.errors.append(f"Required check '{check_type}' was skipped - must pass before approval")
        elif status != CheckStatus.PASSED:
            result.errors.append(f"Required check '{check_type}' has unknown status '{status}'")

    result.can_approve = not result.errors
    return result
