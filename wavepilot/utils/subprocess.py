"""Subprocess management with bounded waits for collaborator processes."""

import asyncio
import logging
import os
import shlex
import signal
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024


class SubprocessError(Exception):
    """Subprocess execution error."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out


class SubprocessManager:
    """Run one external command at a time and wait for it to finish.

    Every collaborator of the orchestrator (git, the coding agent, verifier
    gates) goes through this class. A ``timeout_sec`` of ``None`` means the
    call blocks until the process exits on its own.
    """

    def __init__(
        self,
        timeout_sec: float | None = None,
        log_dir: Path | None = None,
    ):
        """Initialize subprocess manager.

        Args:
            timeout_sec: Hard timeout for the process (None waits forever)
            log_dir: Directory for per-command output logs
        """
        self.timeout_sec = timeout_sec
        self.log_dir = log_dir

    @staticmethod
    async def _terminate_process(
        process: asyncio.subprocess.Process,
        grace_sec: float = 2.0,
    ) -> None:
        """Terminate a process and its process group (best-effort)."""
        if process.returncode is not None:
            return

        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                if os.name != "nt":
                    os.killpg(process.pid, sig)
                elif sig == signal.SIGTERM:
                    process.terminate()
                else:
                    process.kill()
            except ProcessLookupError:
                return
            except OSError as e:
                logger.debug(f"Signal {sig} to PID {process.pid} failed: {e}")

            try:
                await asyncio.wait_for(process.wait(), timeout=grace_sec)
                return
            except TimeoutError:
                continue

    async def run(
        self,
        command: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
        on_output_line: Callable[[str], None] | None = None,
    ) -> dict:
        """Run command and wait for it, honoring the configured timeout.

        Args:
            command: Command and arguments
            cwd: Working directory
            env: Environment variables (None inherits the current environment)
            stdin: Optional text written to the process's stdin
            on_output_line: Optional callback invoked for each output line

        Returns:
            Result dict with keys:
                - success: bool
                - output: str (stdout and stderr interleaved)
                - exit_code: int | None
                - timed_out: bool

        Raises:
            SubprocessError: If the process cannot be started
        """
        logger.debug("Running command: %s", self._format_command_for_log(command))

        log_file = None
        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
            log_file = open(self.log_dir / f"cmd_{timestamp}.log", "w")

        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=cwd,
                    env=env,
                    start_new_session=(os.name != "nt"),
                    stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except FileNotFoundError:
                if cwd is not None and not Path(cwd).exists():
                    raise SubprocessError(
                        f"Working directory not found: {cwd} (while running: {command[0]})"
                    )
                raise SubprocessError(f"Command not found: {command[0]}")
            except OSError as e:
                raise SubprocessError(f"Failed to start {command[0]}: {e}")

            if stdin is not None and process.stdin:
                try:
                    process.stdin.write(stdin.encode("utf-8"))
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    logger.warning(f"{command[0]} closed stdin before the input was written")
                finally:
                    process.stdin.close()

            output_lines: list[str] = []
            read_task = asyncio.create_task(
                self._read_stream(process.stdout, output_lines, log_file, on_output_line)
            )

            timed_out = False
            try:
                await asyncio.wait_for(process.wait(), timeout=self.timeout_sec)
            except TimeoutError:
                logger.warning(
                    f"Command timed out after {self.timeout_sec}s: {command[0]} (PID {process.pid})"
                )
                await self._terminate_process(process)
                timed_out = True
            except asyncio.CancelledError:
                read_task.cancel()
                await self._terminate_process(process)
                raise

            # Give the reader a moment to drain any remaining buffered output.
            try:
                await asyncio.wait_for(read_task, timeout=2.0)
            except Exception as e:
                logger.warning(f"Output reader for {command[0]} stopped early: {e!r}")
                read_task.cancel()

            exit_code = None if timed_out else process.returncode
            logger.debug(f"Command finished: exit_code={exit_code}, timed_out={timed_out}")

            return {
                "success": exit_code == 0,
                "output": "".join(output_lines),
                "exit_code": exit_code,
                "timed_out": timed_out,
            }
        finally:
            if log_file:
                log_file.close()

    @staticmethod
    def _format_command_for_log(command: list[str]) -> str:
        """Format a command for logs without dumping huge arguments."""
        parts: list[str] = []
        for i, arg in enumerate(command):
            if i >= 12:
                parts.append("...")
                break
            if len(arg) > 200:
                arg = arg[:200] + "..."
            parts.append(shlex.quote(arg))
        return " ".join(parts)

    @staticmethod
    async def _read_stream(
        stream: asyncio.StreamReader | None,
        output_lines: list[str],
        log_file=None,
        on_output_line: Callable[[str], None] | None = None,
    ) -> None:
        """Drain a stream into ``output_lines``, one entry per line.

        Reads fixed-size chunks rather than ``readline`` so a single line
        longer than the stream buffer (large JSON payloads) is kept whole.
        """
        if stream is None:
            return

        def emit(text: str) -> None:
            output_lines.append(text)
            if on_output_line:
                on_output_line(text)
            if log_file:
                log_file.write(text)
                log_file.flush()

        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            pending += chunk
            *complete, pending = pending.split(b"\n")
            for raw in complete:
                emit(raw.decode("utf-8", errors="replace") + "\n")
        if pending:
            emit(pending.decode("utf-8", errors="replace"))
