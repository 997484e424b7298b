"""Shell command execution under the command policy.

`ExecutionEngine.execute()` never raises for command-level failures: denial,
timeouts and launch errors all come back as a CommandOutcome so the caller
can render them.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Union

from mcp_terminal.errors import InvalidArgumentsError
from mcp_terminal.shell.policy import Decision, PolicyStore, evaluate_with_approval

log = logging.getLogger("shell")

MAX_OUTPUT_BYTES = 2 * 1024 * 1024  # per stream
EXEC_TIMEOUT_S = 30.0
_KILL_GRACE_S = 5.0
_READ_CHUNK = 65536

KIND_SECURITY_VIOLATION = "security_violation"
KIND_TIMEOUT = "timeout"
KIND_EXEC_ERROR = "exec_error"


@dataclass(frozen=True)
class CommandRequest:
    command: str
    explanation: str = ""
    background: bool = False
    require_approval: bool = False

    def __post_init__(self) -> None:
        issues = _command_issues(self.command)
        if issues:
            raise InvalidArgumentsError(issues)

    @classmethod
    def from_arguments(cls, arguments: object) -> "CommandRequest":
        """Build from tool-call arguments (wire field names)."""
        if not isinstance(arguments, dict):
            raise InvalidArgumentsError(["arguments must be an object"])

        issues: list[str] = []
        command = arguments.get("command")
        if not isinstance(command, str):
            issues.append("command: expected string")
        else:
            issues.extend(_command_issues(command))

        explanation = arguments.get("explanation", "")
        if not isinstance(explanation, str):
            issues.append("explanation: expected string")

        flags: dict[str, bool] = {}
        for key in ("is_background", "require_user_approval"):
            value = arguments.get(key)
            if not isinstance(value, bool):
                issues.append(f"{key}: expected boolean")
            else:
                flags[key] = value

        if issues:
            raise InvalidArgumentsError(issues)

        return cls(
            command=command,
            explanation=explanation,
            background=flags["is_background"],
            require_approval=flags["require_user_approval"],
        )

    def to_arguments(self) -> dict:
        return {
            "command": self.command,
            "explanation": self.explanation,
            "is_background": self.background,
            "require_user_approval": self.require_approval,
        }


def _command_issues(command: str) -> list[str]:
    if not command.strip():
        return ["command: must not be empty"]
    if "\n" in command or "\r" in command:
        return ["command: Command must be a single line."]
    return []


@dataclass(frozen=True)
class CommandSuccess:
    stdout: str
    stderr: str
    exit_code: int
    truncated: bool = False

    def to_dict(self) -> dict:
        out: dict[str, object] = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
        }
        if self.truncated:
            out["truncated"] = True
        return out


@dataclass(frozen=True)
class CommandWaiting:
    def to_dict(self) -> dict:
        return {"status": "waiting_for_approval"}


@dataclass(frozen=True)
class CommandError:
    kind: str
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"error": True, "code": self.kind, "message": self.message, "details": self.details}


CommandOutcome = Union[CommandSuccess, CommandWaiting, CommandError]


class _BoundedCapture:
    """Keeps at most `limit` bytes; everything after is dropped."""

    def __init__(self, limit: int):
        self.limit = limit
        self.buf = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> bool:
        """Append a chunk; return True the first time the cap is exceeded."""
        if self.truncated:
            return False
        room = self.limit - len(self.buf)
        if len(chunk) <= room:
            self.buf.extend(chunk)
            return False
        self.buf.extend(chunk[:room])
        self.truncated = True
        return True

    def text(self) -> str:
        if self.truncated:
            # The cap may have cut a multi-byte character; drop the partial tail.
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            return decoder.decode(bytes(self.buf), final=False)
        return self.buf.decode("utf-8", errors="replace")


def _signal_name(returncode: int) -> str:
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"signal {-returncode}"


def _log_command(command: str, phase: str, **details: object) -> None:
    if details:
        log.info(f"[{phase}] {command} {json.dumps(details, default=str)}")
    else:
        log.info(f"[{phase}] {command}")


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # Commands run in their own session, so the group id is the shell's pid;
    # killing the group takes pipeline members down with the shell.
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


class ExecutionEngine:
    """Runs admitted commands in the foreground or detached in the background."""

    def __init__(
        self,
        policy: PolicyStore,
        *,
        timeout_s: float = EXEC_TIMEOUT_S,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        cwd: str | None = None,
    ):
        self.policy = policy
        self.timeout_s = timeout_s
        self.max_output_bytes = max_output_bytes
        self.cwd = cwd
        self._background: set[asyncio.Task] = set()

    @property
    def background_count(self) -> int:
        return len(self._background)

    async def execute(self, request: CommandRequest) -> CommandOutcome:
        command = request.command
        _log_command(
            command,
            "requested",
            is_background=request.background,
            require_user_approval=request.require_approval,
            explanation=request.explanation,
        )

        verdict = evaluate_with_approval(command, self.policy.current, request.require_approval)
        if verdict.decision == Decision.DENY:
            _log_command(command, "denied", reason=verdict.reason, rule=verdict.matched_rule)
            return CommandError(
                kind=KIND_SECURITY_VIOLATION,
                message="Command is denied by security rules",
                details={"command": command, "reason": verdict.reason, "rule": verdict.matched_rule},
            )
        if verdict.decision == Decision.REQUIRE_APPROVAL:
            _log_command(command, "waiting_for_approval", reason=verdict.reason)
            return CommandWaiting()

        if request.background:
            return await self._run_background(command)

        try:
            return await self._run_foreground(command)
        except Exception as e:
            log.exception(f"Unexpected failure running {command!r}")
            return CommandError(
                kind=KIND_EXEC_ERROR,
                message=f"Command failed: {e}",
                details={"command": command, "error_code": type(e).__name__, "signal": None},
            )

    async def _run_background(self, command: str) -> CommandOutcome:
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as e:
            _log_command(command, "background_error", error=str(e))
        else:
            _log_command(command, "background_started", pid=proc.pid)
            task = asyncio.create_task(self._reap(command, proc))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return CommandSuccess(stdout="", stderr="", exit_code=0, truncated=False)

    async def _reap(self, command: str, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        if returncode == 0:
            _log_command(command, "background_exited", exitCode=returncode)
        else:
            _log_command(command, "background_error", exitCode=returncode)

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        capture: _BoundedCapture,
        on_overflow,
    ) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            if capture.feed(chunk):
                on_overflow()

    async def _run_foreground(self, command: str) -> CommandOutcome:
        _log_command(command, "executing")
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as e:
            _log_command(command, "error", error=str(e), errno=e.errno)
            return CommandError(
                kind=KIND_EXEC_ERROR,
                message=f"Command failed: {e}",
                details={"command": command, "error_code": e.errno, "signal": None},
            )

        assert proc.stdout is not None and proc.stderr is not None
        out = _BoundedCapture(self.max_output_bytes)
        err = _BoundedCapture(self.max_output_bytes)
        overflow_killed = False

        def on_overflow() -> None:
            nonlocal overflow_killed
            if overflow_killed:
                return
            overflow_killed = True
            _log_command(command, "truncated", limit=self.max_output_bytes)
            if proc.returncode is None:
                _kill_group(proc)

        tasks = [
            asyncio.create_task(self._pump(proc.stdout, out, on_overflow)),
            asyncio.create_task(self._pump(proc.stderr, err, on_overflow)),
            asyncio.create_task(proc.wait()),
        ]
        try:
            _, pending = await asyncio.wait(tasks, timeout=self.timeout_s)
        except asyncio.CancelledError:
            _kill_group(proc)
            for task in tasks:
                task.cancel()
            raise

        if pending:
            _kill_group(proc)
            await self._settle(tasks)
            _log_command(command, "timeout", timeout_s=self.timeout_s)
            return CommandError(
                kind=KIND_TIMEOUT,
                message=f"Command timed out after {self.timeout_s:g} seconds.",
                details={"command": command, "error_code": "ETIMEDOUT", "signal": "SIGKILL"},
            )

        for task in tasks:
            task.result()

        returncode = proc.returncode if proc.returncode is not None else -1

        if out.truncated or err.truncated:
            # Overflow is not a command failure; report what was captured.
            exit_code = returncode if returncode >= 0 else 1
            _log_command(
                command, "finished", exitCode=exit_code, truncated=True,
                stdout_len=len(out.buf), stderr_len=len(err.buf),
            )
            return CommandSuccess(stdout=out.text(), stderr=err.text(), exit_code=exit_code, truncated=True)

        if returncode < 0:
            sig = _signal_name(returncode)
            _log_command(command, "error", signal=sig)
            return CommandError(
                kind=KIND_EXEC_ERROR,
                message=f"Command failed: terminated by {sig}",
                details={
                    "command": command,
                    "error_code": returncode,
                    "signal": sig,
                    "stdout": out.text(),
                    "stderr": err.text(),
                },
            )

        _log_command(
            command, "finished", exitCode=returncode, truncated=False,
            stdout_len=len(out.buf), stderr_len=len(err.buf),
        )
        return CommandSuccess(stdout=out.text(), stderr=err.text(), exit_code=returncode)

    async def _settle(self, tasks: list[asyncio.Task]) -> None:
        """Give killed-process readers a moment to hit EOF, then cancel them."""
        _, pending = await asyncio.wait(tasks, timeout=_KILL_GRACE_S)
        for task in pending:
            log.warning("Reader did not finish after SIGKILL; cancelling")
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
