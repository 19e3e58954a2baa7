from storymap.models.domain import RunCheck
from storymap.orchestration.approval_gates import validate_approval_gates


def _check(check_type: str, status: str) -> RunCheck:
    return RunCheck(id=f"{check_type}-{status}", run_id="r", check_type=check_type, status=status, executed_at="t")


def test_missing_required_check_blocks_approval() -> None:
    result = validate_approval_gates(
        ["dependency", "security", "lint"],
        [_check("dependency", "passed"), _check("security", "passed")],
    )

    assert result.can_approve is False
    assert result.missing_checks == ["lint"]
    assert result.failed_checks == []
    assert result.errors == ["Required check 'lint' has not been executed"]


def test_all_required_checks_passed() -> None:
    result = validate_approval_gates(["lint", "unit"], [_check("lint", "passed"), _check("unit", "passed")])

    assert result.can_approve is True
    assert result.errors == []


def test_failed_and_skipped_required_checks() -> None:
    result = validate_approval_gates(["lint", "unit"], [_check("lint", "failed"), _check("unit", "skipped")])

    assert result.can_approve is False
    assert result.failed_checks == ["lint"]
    assert result.missing_checks == []
    assert len(result.errors) == 2
    assert "skipped" in result.errors[1]


def test_latest_record_per_type_wins() -> None:
    recorded = [_check("lint", "failed"), _check("lint", "passed")]
    assert validate_approval_gates(["lint"], recorded).can_approve is True

    recorded = [_check("lint", "passed"), _check("lint", "failed")]
    assert validate_approval_gates(["lint"], recorded).failed_checks == ["lint"]


def test_checks_that_are_not_required_never_block() -> None:
    result = validate_approval_gates(["lint"], [_check("lint", "passed"), _check("e2e", "failed")])

    assert result.can_approve is True


def test_dict_records_are_accepted() -> None:
    result = validate_approval_gates(["lint"], [{"check_type": "lint", "status": "passed"}])

    assert result.can_approve is True


def test_no_required_checks_approves() -> None:
    assert validate_approval_gates([], []).can_approve is True


def test_unrecognized_status_blocks_without_counting_as_failed() -> None:
    result = validate_approval_gates(["lint"], [{"check_type": "lint", "status": "pending"}])

    assert result.can_approve is False
    assert result.failed_checks == []
    assert result.missing_checks == []
    assert result.errors == ["Required check 'lint' has unknown status 'pending'"]
