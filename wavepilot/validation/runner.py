"""Verifier collaborators.

The orchestrator only sees ``VerificationResult.passed``; the error details
are fed back into the next attempt's context. Verifiers fail closed: a
timeout, a command that cannot start, or unparseable output all count as a
failed verification.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from ..utils.subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)

# "path/to/file.py:12: message" or "path/to/file.ts:12:5 - message"
_LOCATION = re.compile(r"^(?P<file>[^\s:][^:]*\.[A-Za-z0-9]+):(?P<line>\d+)(?::\d+)?[:\s-]+(?P<message>.+)$")

MAX_ERRORS_PER_GATE = 20
OUTPUT_TAIL_LINES = 20


@dataclass
class GateError:
    """One problem reported by a verification gate."""

    gate: str
    message: str
    file: str | None = None
    line: int | None = None
    remediation: str | None = None

    @property
    def location(self) -> str:
        if not self.file:
            return ""
        return f"{self.file}:{self.line}" if self.line else self.file


@dataclass
class VerificationResult:
    """Pass/fail verdict with the errors behind it."""

    passed: bool
    errors: list[GateError] = field(default_factory=list)

    @classmethod
    def failure(cls, gate: str, message: str) -> "VerificationResult":
        return cls(passed=False, errors=[GateError(gate=gate, message=message)])


def _shell_command(command: str) -> list[str]:
    if os.name == "nt":
        return ["cmd", "/c", command]
    return ["bash", "-lc", command]


def _tail(output: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])


def parse_gate_output(gate: str, output: str) -> list[GateError]:
    """Extract ``file:line`` errors from tool output.

    Falls back to a single error carrying the output tail when nothing
    location-shaped is found.
    """
    errors = []
    for raw in output.splitlines():
        match = _LOCATION.match(raw.strip())
        if not match:
            continue
        errors.append(
            GateError(
                gate=gate,
                file=match.group("file"),
                line=int(match.group("line")),
                message=match.group("message").strip(),
            )
        )
        if len(errors) >= MAX_ERRORS_PER_GATE:
            break

    if not errors:
        errors.append(GateError(gate=gate, message=_tail(output) or f"{gate} failed with no output"))
    return errors


class Verifier(ABC):
    """Checks the changes produced in a working copy."""

    @abstractmethod
    async def verify(self, project_dir: Path, gate_set: list[str] | None = None) -> VerificationResult:
        """Verify ``project_dir``.

        Args:
            project_dir: Working copy to verify
            gate_set: Gates to run (None runs every configured gate)

        Returns:
            VerificationResult
        """


class CommandVerifier(Verifier):
    """Run one shell command per gate; a gate passes when its command exits 0."""

    def __init__(
        self,
        gates: dict[str, str],
        timeout_sec: int = 300,
        log_dir: Path | None = None,
    ):
        """Initialize command verifier.

        Args:
            gates: Gate name -> shell command, run in insertion order
            timeout_sec: Timeout per gate
            log_dir: Directory for command logs
        """
        self.gates = gates
        self.timeout_sec = timeout_sec
        self.log_dir = log_dir

    async def verify(self, project_dir: Path, gate_set: list[str] | None = None) -> VerificationResult:
        names = list(self.gates) if gate_set is None else gate_set
        unknown = [name for name in names if name not in self.gates]
        if unknown:
            return VerificationResult.failure("config", f"Unknown gates: {', '.join(unknown)}")
        if not names:
            logger.warning("No verification gates configured; treating as failure")
            return VerificationResult.failure("config", "No verification gates configured")

        manager = SubprocessManager(timeout_sec=self.timeout_sec, log_dir=self.log_dir)
        errors: list[GateError] = []
        for name in names:
            command = self.gates[name]
            logger.info(f"Running gate {name}: {command}")
            try:
                result = await manager.run(_shell_command(command), cwd=project_dir)
            except SubprocessError as e:
                errors.append(GateError(gate=name, message=f"Gate could not run: {e}"))
                continue

            if result["timed_out"]:
                errors.append(
                    GateError(gate=name, message=f"Gate timed out after {self.timeout_sec}s")
                )
            elif not result["success"]:
                errors.extend(parse_gate_output(name, result["output"]))
            else:
                logger.info(f"Gate {name} passed")

        return VerificationResult(passed=not errors, errors=errors)


class JsonVerifier(Verifier):
    """Run one command that prints ``{"passed": bool, "errors": [...]}`` as JSON.

    The JSON is read even when the command exits non-zero, since failing
    verification commands commonly do.
    """

    def __init__(self, command: str, timeout_sec: int = 600, log_dir: Path | None = None):
        self.command = command
        self.timeout_sec = timeout_sec
        self.log_dir = log_dir

    async def verify(self, project_dir: Path, gate_set: list[str] | None = None) -> VerificationResult:
        command = self.command
        if gate_set:
            command = f"{command} --gates {','.join(gate_set)}"

        manager = SubprocessManager(timeout_sec=self.timeout_sec, log_dir=self.log_dir)
        try:
            result = await manager.run(_shell_command(command), cwd=project_dir)
        except SubprocessError as e:
            return VerificationResult.failure("verify", f"Verifier could not run: {e}")

        if result["timed_out"]:
            return VerificationResult.failure("verify", f"Verifier timed out after {self.timeout_sec}s")

        payload = self._extract_json(result["output"])
        if payload is None:
            return VerificationResult.failure(
                "verify", f"Verifier output is not JSON:\n{_tail(result['output'])}"
            )
        return self._parse_payload(payload)

    @staticmethod
    def _extract_json(output: str) -> dict | None:
        """Parse the whole output, else the last line that parses as a JSON object."""
        candidates = [output.strip()] + [line.strip() for line in reversed(output.splitlines())]
        for candidate in candidates:
            if not candidate.startswith("{"):
                continue
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data
        return None

    @staticmethod
    def _parse_payload(payload: dict) -> VerificationResult:
        errors = []
        for item in payload.get("errors") or []:
            if not isinstance(item, dict):
                errors.append(GateError(gate="verify", message=str(item)))
                continue
            line = item.get("line")
            errors.append(
                GateError(
                    gate=str(item.get("gate", "verify")),
                    message=str(item.get("message", "")),
                    file=item.get("file"),
                    line=int(line) if isinstance(line, int | str) and str(line).isdigit() else None,
                    remediation=item.get("remediation"),
                )
            )

        passed = payload.get("passed") is True
        if not passed and not errors:
            errors.append(GateError(gate="verify", message="Verifier reported failure without details"))
        return VerificationResult(passed=passed, errors=errors)
