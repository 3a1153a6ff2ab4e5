from __future__ import annotations

import json
import os
import re
import shlex
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from hackscore.main import hackscore

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli_env(monkeypatch: pytest.MonkeyPatch) -> None:
    src = str(Path(__file__).resolve().parents[1] / "src")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(filter(None, [src, os.environ.get("PYTHONPATH")])),
    )
    monkeypatch.setenv(
        "HACKSCORE_EXECUTOR_COMMAND_TEMPLATE",
        (
            f"{shlex.quote(sys.executable)} -m hackscore.orchestrator.backend.sample_agent "
            "--repository {repository} --rubric-file {rubric_file} --prompt-file {prompt_file}"
        ),
    )
    monkeypatch.setenv("HACKSCORE_EXECUTOR", "cli")
    monkeypatch.setenv("HACKSCORE_INTER_MESSAGE_DELAY_SECONDS", "0")
    monkeypatch.setenv("HACKSCORE_TRIGGER_ON_ENQUEUE", "0")


def _invoke(args: list[str]):
    return CliRunner().invoke(hackscore, args)


def _create_batch(db_path: Path, *extra: str) -> str:
    result = _invoke(
        [
            "batch",
            "create",
            "--db-path",
            str(db_path),
            "--owner",
            "alice",
            "--name",
            "Spring",
            "--repo",
            "a/1",
            "--repo",
            "a/2",
            *extra,
        ],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"batch_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_batch_lifecycle_through_cli(tmp_path: Path, cli_env: None) -> None:
    db_path = tmp_path / "cli.db"
    secret = _invoke(
        [
            "secrets",
            "set",
            "--db-path",
            str(db_path),
            "--owner",
            "alice",
            "--type",
            "anthropic_key",
            "--value",
            "sk-ant-test",
        ],
    )
    assert secret.exit_code == 0, secret.output
    assert "Secret saved: anthropic_key for alice" in secret.output

    batch_id = _create_batch(db_path)

    stats = _invoke(["queue", "stats", "--db-path", str(db_path)])
    assert stats.exit_code == 0, stats.output
    assert "Length: 2 (visible=2 leased=0)" in stats.output

    poll = _invoke(["worker", "poll", "--db-path", str(db_path)])
    assert poll.exit_code == 0, poll.output
    assert "processed=2 has_errors=False stop_reason=queue_empty" in poll.output

    show = _invoke(
        ["batch", "show", "--db-path", str(db_path), "--owner", "alice", "--batch-id", batch_id],
    )
    assert show.exit_code == 0, show.output
    assert "Status: completed" in show.output
    assert "Completed: 2/2" in show.output
    assert "Average score: 16.00 / 20" in show.output
    assert "- a/1: 16" in show.output
    assert "market_advantage (Market advantage): 4" in show.output

    listing = _invoke(["batch", "list", "--db-path", str(db_path), "--owner", "alice"])
    assert listing.exit_code == 0, listing.output
    assert f"{batch_id} | Spring | completed | 2/2 | avg=16.00" in listing.output

    retry = _invoke(
        [
            "batch",
            "retry-repo",
            "--db-path",
            str(db_path),
            "--owner",
            "alice",
            "--batch-id",
            batch_id,
            "--repo",
            "a/1",
        ],
    )
    assert retry.exit_code == 0, retry.output
    assert "Repository retry queued: a/1" in retry.output

    deleted = _invoke(
        ["batch", "delete", "--db-path", str(db_path), "--owner", "alice", "--batch-id", batch_id],
    )
    assert deleted.exit_code == 0, deleted.output
    assert "archived 1 queued messages" in deleted.output

    archived = _invoke(["queue", "archived", "--db-path", str(db_path)])
    assert archived.exit_code == 0, archived.output
    assert "| a/1" in archived.output

    missing = _invoke(
        ["batch", "show", "--db-path", str(db_path), "--owner", "alice", "--batch-id", batch_id],
    )
    assert missing.exit_code == 1
    assert "Batch not found or access denied" in missing.output


def test_poll_without_api_key_reports_failures(tmp_path: Path, cli_env: None) -> None:
    db_path = tmp_path / "cli.db"
    batch_id = _create_batch(db_path)

    poll = _invoke(["worker", "poll", "--db-path", str(db_path), "--max-messages", "1"])

    assert poll.exit_code == 0, poll.output
    assert "processed=1 has_errors=True stop_reason=max_messages" in poll.output
    assert "Anthropic API key not found" in poll.output
    show = _invoke(
        ["batch", "show", "--db-path", str(db_path), "--owner", "alice", "--batch-id", batch_id],
    )
    assert "Status: failed" in show.output


def test_custom_rubric_file_is_used(tmp_path: Path, cli_env: None) -> None:
    db_path = tmp_path / "cli.db"
    rubric_path = tmp_path / "rubric.json"
    rubric_path.write_text(
        json.dumps({"criteria": [{"id": "overall", "label": "Overall", "max_score": 100}]}),
        "utf-8",
    )
    batch_id = _create_batch(db_path, "--rubric-file", str(rubric_path))

    show = _invoke(
        ["batch", "show", "--db-path", str(db_path), "--owner", "alice", "--batch-id", batch_id],
    )

    assert "Average score: - / 100" in show.output


def test_invalid_rubric_file_is_a_usage_error(tmp_path: Path, cli_env: None) -> None:
    rubric_path = tmp_path / "rubric.json"
    rubric_path.write_text(json.dumps({"criteria": []}), "utf-8")

    result = _invoke(
        [
            "batch",
            "create",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--owner",
            "alice",
            "--name",
            "Bad",
            "--repo",
            "a/1",
            "--rubric-file",
            str(rubric_path),
        ],
    )

    assert result.exit_code == 1
    assert "at least one criterion" in result.output


def test_process_unknown_job_fails(tmp_path: Path, cli_env: None) -> None:
    result = _invoke(
        ["worker", "process", "--db-path", str(tmp_path / "cli.db"), "--job-id", "nope"],
    )

    assert result.exit_code == 1
    assert "Job not found: nope" in result.output


def test_duplicate_repository_addition_is_rejected(tmp_path: Path, cli_env: None) -> None:
    db_path = tmp_path / "cli.db"
    batch_id = _create_batch(db_path)

    result = _invoke(
        [
            "batch",
            "add-repo",
            "--db-path",
            str(db_path),
            "--owner",
            "alice",
            "--batch-id",
            batch_id,
            "--repo",
            "a/2",
        ],
    )

    assert result.exit_code == 1
    assert "already exists in this batch" in result.output


def test_version_option() -> None:
    result = _invoke(["--version"])

    assert result.exit_code == 0
    assert "hackscore" in result.output


def test_worker_run_drains_in_cycles(tmp_path: Path, cli_env: None) -> None:
    db_path = tmp_path / "cli.db"
    _invoke(
        [
            "secrets",
            "set",
            "--db-path",
            str(db_path),
            "--owner",
            "alice",
            "--type",
            "anthropic_key",
            "--value",
            "sk-ant-test",
        ],
    )
    batch_id = _create_batch(db_path)

    run = _invoke(
        ["worker", "run", "--db-path", str(db_path), "--interval", "0.01", "--max-cycles", "2"],
    )

    assert run.exit_code == 0, run.output
    assert "Polling cycles: 2" in run.output
    assert "processed=2 has_errors=False stop_reason=max_cycles" in run.output
    show = _invoke(
        ["batch", "show", "--db-path", str(db_path), "--owner", "alice", "--batch-id", batch_id],
    )
    assert "Status: completed" in show.output


def test_worker_run_rejects_non_positive_interval(tmp_path: Path, cli_env: None) -> None:
    result = _invoke(["worker", "run", "--db-path", str(tmp_path / "cli.db"), "--interval", "0"])

    assert result.exit_code == 2


def test_log_level_is_read_from_environment(
    tmp_path: Path,
    cli_env: None,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("HACKSCORE_LOG_LEVEL", "LOUD")

    result = _invoke(["queue", "stats", "--db-path", str(tmp_path / "cli.db")])

    assert result.exit_code == 2
    assert "LOUD" in result.output
