"""
Run and assignment validation against a project's system policy.
"""

from typing import Any, Dict, Iterable, List, Sequence


def _norm(path: str) -> str:
    return path.strip().strip("/")


def paths_overlap(path: str, other: str) -> bool:
    """True when one path equals or contains the other."""
    a, b = _norm(path), _norm(other)
    if not a or not b:
        return a == b
    return a == b or a.startswith(b + "/") or b.startswith(a + "/")


def forbidden_overlaps(allowed_paths: Iterable[str], forbidden_paths: Sequence[str]) -> List[str]:
    """Forbidden paths touched by any allowed path, in policy order."""
    allowed = list(allowed_paths)
    return [f for f in forbidden_paths if any(paths_overlap(a, f) for a in allowed)]


def validate_run_input(run_input_snapshot: Dict[str, Any], forbidden_paths: Sequence[str]) -> List[str]:
    errors: List[str] = []
    if run_input_snapshot.get("workflow_id") is None and run_input_snapshot.get("card_id") is None:
        errors.append("run_input_snapshot must include workflow_id or card_id as scope target")

    for forbidden in forbidden_overlaps(run_input_snapshot.get("allowed_paths") or [], forbidden_paths):
        errors.append(f"allowed_paths cannot include forbidden path: {forbidden}")

    run_forbidden = run_input_snapshot.get("forbidden_paths")
    if run_forbidden is not None:
        for policy_path in forbidden_paths:
            if not any(paths_overlap(p, policy_path) for p in run_forbidden):
                errors.append(f"run must forbid paths required by policy: {policy_path}")
    return errors


def validate_scope(scope: str, required_checks: Sequence[str], *, strict_workflow_checks: bool) -> List[str]:
    errors: List[str] = []
    if scope == "workflow" and strict_workflow_checks and "integration" not in required_checks:
        errors.append("workflow scope requires integration check in policy required_checks")
    if not required_checks:
        errors.append("policy must have at least one required check")
    return errors
