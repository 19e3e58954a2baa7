import json
import logging

from storymap.logging import JsonFormatter, RequestIdFilter, log_context, log_extra, strip_url_credentials


def _record(**extra) -> logging.LogRecord:
    record = logging.makeLogRecord({"name": "storymap.test", "levelno": logging.INFO, "levelname": "INFO",
                                    "msg": "repo_cloned"})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_strip_url_credentials_inside_messages() -> None:
    text = "fatal: could not read from https://ghp_abc@github.com/u/r.git (exit 128)"

    assert strip_url_credentials(text) == "fatal: could not read from https://github.com/u/r.git (exit 128)"
    assert strip_url_credentials("git@github.com:u/r.git") == "git@github.com:u/r.git"


def test_json_formatter_masks_secrets_and_url_tokens() -> None:
    record = _record(github_token="ghp_abc", clone_url="https://ghp_abc@github.com/u/r.git", run_id="run-1")

    data = json.loads(JsonFormatter().format(record))

    assert data["message"] == "repo_cloned"
    assert data["github_token"] == "[REDACTED]"
    assert data["clone_url"] == "https://github.com/u/r.git"
    assert data["run_id"] == "run-1"


def test_filter_applies_bound_context_and_defaults() -> None:
    filt = RequestIdFilter()

    with log_context(request_id="req-7", card_id=None):
        record = _record(project_id="p1")
        filt.filter(record)

    assert record.request_id == "req-7"
    assert record.project_id == "p1"
    assert record.card_id == "-"

    outside = _record()
    filt.filter(outside)
    assert outside.request_id == "-"


def test_log_extra_drops_none_values() -> None:
    assert log_extra(run_id="r", card_id=None, attempts=0) == {"run_id": "r", "attempts": 0}
