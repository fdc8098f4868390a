"""Unit tests for verifier collaborators."""

from unittest.mock import AsyncMock, patch

import pytest

from wavepilot.utils.subprocess import SubprocessError
from wavepilot.validation.runner import (
    MAX_ERRORS_PER_GATE,
    CommandVerifier,
    JsonVerifier,
    parse_gate_output,
)


def result(success=True, output="", timed_out=False, exit_code=None):
    if exit_code is None:
        exit_code = 0 if success else 1
    return {"success": success, "output": output, "exit_code": exit_code, "timed_out": timed_out}


def test_parse_gate_output_extracts_locations() -> None:
    output = """FAILED tests/test_api.py::test_users
src/api.py:14: error: Incompatible return value
src/app.ts:3:7 - error TS2322: Type 'string' is not assignable
"""
    errors = parse_gate_output("types", output)

    assert [(e.file, e.line) for e in errors] == [("src/api.py", 14), ("src/app.ts", 3)]
    assert errors[0].message == "error: Incompatible return value"
    assert all(e.gate == "types" for e in errors)


def test_parse_gate_output_falls_back_to_tail() -> None:
    output = "\n".join(f"line {n}" for n in range(50))

    errors = parse_gate_output("tests", output)

    assert len(errors) == 1
    assert errors[0].file is None
    assert errors[0].message.startswith("line 30")
    assert errors[0].message.endswith("line 49")


def test_parse_gate_output_caps_errors() -> None:
    output = "\n".join(f"src/m.py:{n}: bad" for n in range(1, 100))

    assert len(parse_gate_output("lint", output)) == MAX_ERRORS_PER_GATE


def test_parse_gate_output_empty() -> None:
    errors = parse_gate_output("tests", "")

    assert errors[0].message == "tests failed with no output"


@pytest.mark.asyncio
async def test_command_verifier_all_pass(tmp_path) -> None:
    verifier = CommandVerifier({"lint": "ruff check .", "tests": "pytest -q"})
    run = AsyncMock(return_value=result())

    with patch("wavepilot.validation.runner.SubprocessManager.run", run):
        verdict = await verifier.verify(tmp_path)

    assert verdict.passed is True
    assert verdict.errors == []
    assert run.await_count == 2
    assert run.await_args_list[0].args[0][-1] == "ruff check ."
    assert run.await_args_list[0].kwargs["cwd"] == tmp_path


@pytest.mark.asyncio
async def test_command_verifier_collects_failures(tmp_path) -> None:
    verifier = CommandVerifier({"lint": "ruff check .", "tests": "pytest -q"})
    run = AsyncMock(
        side_effect=[
            result(success=False, output="src/a.py:3: F401 unused import"),
            result(success=False, timed_out=True, exit_code=None),
        ]
    )

    with patch("wavepilot.validation.runner.SubprocessManager.run", run):
        verdict = await verifier.verify(tmp_path)

    assert verdict.passed is False
    assert [e.gate for e in verdict.errors] == ["lint", "tests"]
    assert verdict.errors[0].location == "src/a.py:3"
    assert "timed out" in verdict.errors[1].message


@pytest.mark.asyncio
async def test_command_verifier_gate_set(tmp_path) -> None:
    verifier = CommandVerifier({"lint": "ruff check .", "tests": "pytest -q"})
    run = AsyncMock(return_value=result())

    with patch("wavepilot.validation.runner.SubprocessManager.run", run):
        verdict = await verifier.verify(tmp_path, gate_set=["tests"])

    assert verdict.passed is True
    assert run.await_count == 1


@pytest.mark.asyncio
async def test_command_verifier_unknown_gate_fails_closed(tmp_path) -> None:
    verdict = await CommandVerifier({"tests": "pytest"}).verify(tmp_path, gate_set=["types"])

    assert verdict.passed is False
    assert "types" in verdict.errors[0].message


@pytest.mark.asyncio
async def test_command_verifier_without_gates_fails_closed(tmp_path) -> None:
    verdict = await CommandVerifier({}).verify(tmp_path)

    assert verdict.passed is False


@pytest.mark.asyncio
async def test_command_verifier_command_cannot_start(tmp_path) -> None:
    run = AsyncMock(side_effect=SubprocessError("Command not found: bash"))

    with patch("wavepilot.validation.runner.SubprocessManager.run", run):
        verdict = await CommandVerifier({"tests": "pytest"}).verify(tmp_path)

    assert verdict.passed is False
    assert "could not run" in verdict.errors[0].message


@pytest.mark.asyncio
async def test_json_verifier_parses_payload(tmp_path) -> None:
    output = (
        "running gates...\n"
        '{"passed": false, "errors": [{"gate": "tests", "message": "boom", '
        '"file": "a.py", "line": 4, "remediation": "fix it"}]}\n'
    )
    run = AsyncMock(return_value=result(success=False, output=output))

    with patch("wavepilot.validation.runner.SubprocessManager.run", run):
        verdict = await JsonVerifier("verify --json").verify(tmp_path, gate_set=["tests", "lint"])

    assert verdict.passed is False
    error = verdict.errors[0]
    assert (error.gate, error.file, error.line, error.remediation) == ("tests", "a.py", 4, "fix it")
    assert run.await_args.args[0][-1] == "verify --json --gates tests,lint"


@pytest.mark.asyncio
async def test_json_verifier_pass(tmp_path) -> None:
    run = AsyncMock(return_value=result(output='{"passed": true, "errors": []}'))

    with patch("wavepilot.validation.runner.SubprocessManager.run", run):
        verdict = await JsonVerifier("verify --json").verify(tmp_path)

    assert verdict.passed is True


@pytest.mark.asyncio
async def test_json_verifier_non_json_fails_closed(tmp_path) -> None:
    run = AsyncMock(return_value=result(output="Traceback (most recent call last): ..."))

    with patch("wavepilot.validation.runner.SubprocessManager.run", run):
        verdict = await JsonVerifier("verify --json").verify(tmp_path)

    assert verdict.passed is False
    assert "not JSON" in verdict.errors[0].message


@pytest.mark.asyncio
async def test_json_verifier_failure_without_details(tmp_path) -> None:
    run = AsyncMock(return_value=result(output='{"passed": false}'))

    with patch("wavepilot.validation.runner.SubprocessManager.run", run):
        verdict = await JsonVerifier("verify --json").verify(tmp_path)

    assert verdict.passed is False
    assert len(verdict.errors) == 1
