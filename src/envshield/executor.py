"""
Command execution with secrets injected into the environment.

Each call spawns the command through a shell in its own process group,
drains stdout/stderr on reader threads, and settles on exactly one
outcome: timeout, normal exit, or spawn error. Output is scrubbed before
it is returned, then re-checked for any injected value that survived.
"""

import logging
import os
import re
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, IO, Iterable, List, Mapping, Optional, Pattern, Tuple, Union

from .scrubber import Scrubber

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000
TIMEOUT_MESSAGE = "Command timeout exceeded"

_READ_CHUNK = 65536
_JOIN_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class ExecutionRequest:
    command: str
    secrets: Mapping[str, str] = field(default_factory=dict)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    working_dir: Optional[Union[str, Path]] = None


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    stdout: str
    stderr: str
    redacted_count: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "redactedCount": self.redacted_count,
        }


# Terminal outcomes. An unresolved _Resolution (outcome None) is "pending".

@dataclass(frozen=True)
class TimedOut:
    pass


@dataclass(frozen=True)
class Exited:
    code: int


@dataclass(frozen=True)
class SpawnError:
    message: str


Outcome = Union[TimedOut, Exited, SpawnError]


class _Resolution:
    """Holds the first outcome committed for one execution; later ones are ignored."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcome: Optional[Outcome] = None

    def resolve(self, outcome: Outcome) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            return True

    @property
    def outcome(self) -> Optional[Outcome]:
        with self._lock:
            return self._outcome

    @property
    def pending(self) -> bool:
        return self.outcome is None


def build_blocklist(blocked_commands: Iterable[str]) -> Tuple[Tuple[str, Pattern[str]], ...]:
    """
    Compile blocked entries into whole-token matchers.

    An entry must be bounded on both sides by start/end of string,
    whitespace, or one of ``| & ;``. "sudo" matches "ls | sudo cat" but
    not "sudoku".
    """
    return tuple(
        (blocked, re.compile(r"(?:^|\s|[|&;])" + re.escape(blocked) + r"(?:\s|[|&;]|$)"))
        for blocked in blocked_commands
    )


def build_env(secrets: Mapping[str, str]) -> Dict[str, str]:
    """Current environment with secrets overlaid as plain variables."""
    env = os.environ.copy()
    env.update(secrets)
    return env


def kill_process_tree(proc: subprocess.Popen) -> None:
    """SIGKILL the whole process group; fall back to the direct child."""
    if _kill_process_group(proc):
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def _kill_process_group(proc: subprocess.Popen) -> bool:
    killpg = getattr(os, "killpg", None)
    if killpg is None:
        return False
    try:
        # Started with start_new_session=True, so pid is also the pgid.
        killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Group already gone
        return True
    except OSError as e:
        logger.debug("Process group kill failed for pid %s: %s", proc.pid, e)
        return False
    return True


class CommandExecutor:
    """Runs commands with secrets injected and output scrubbed."""

    def __init__(self, scrubber: Scrubber, blocked_commands: Iterable[str] = ()):
        self.scrubber = scrubber
        self._blocklist = build_blocklist(blocked_commands)

    def find_blocked(self, command: str) -> Optional[str]:
        """Return the first blocked entry found in command, if any."""
        for blocked, matcher in self._blocklist:
            if matcher.search(command):
                return blocked
        return None

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run request.command. Never raises; failures come back with exit_code 1."""
        blocked = self.find_blocked(request.command)
        if blocked is not None:
            logger.info("Blocked command containing %r", blocked)
            return ExecutionResult(1, "", f'Command blocked: contains "{blocked}"', 0)

        env = build_env(request.secrets)
        try:
            proc = subprocess.Popen(
                request.command,
                shell=True,
                env=env,
                cwd=request.working_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            return self._finish(SpawnError(str(e)), b"", b"", request.secrets)

        resolution = _Resolution()
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = [
            threading.Thread(
                target=_drain, args=(proc.stdout, stdout_chunks), daemon=True, name="EnvshieldStdout"
            ),
            threading.Thread(
                target=_drain, args=(proc.stderr, stderr_chunks), daemon=True, name="EnvshieldStderr"
            ),
        ]
        for reader in readers:
            reader.start()

        def on_timeout():
            if resolution.resolve(TimedOut()):
                logger.info(
                    "Command exceeded %d ms, killing process group %s", request.timeout_ms, proc.pid
                )
                kill_process_tree(proc)

        timer = threading.Timer(request.timeout_ms / 1000, on_timeout)
        timer.daemon = True
        timer.start()

        try:
            proc.wait()
            # Descendants may hold the pipes open after the shell exits;
            # the timer still bounds how long we wait for them.
            for reader in readers:
                while reader.is_alive() and resolution.pending:
                    reader.join(_JOIN_POLL_SECONDS)
            resolution.resolve(Exited(proc.returncode))
        finally:
            timer.cancel()

        return self._finish(
            resolution.outcome, b"".join(stdout_chunks), b"".join(stderr_chunks), request.secrets
        )

    def _finish(
        self, outcome: Outcome, stdout: bytes, stderr: bytes, secrets: Mapping[str, str]
    ) -> ExecutionResult:
        if isinstance(outcome, TimedOut):
            return ExecutionResult(1, "", TIMEOUT_MESSAGE, 0)
        if isinstance(outcome, SpawnError):
            return ExecutionResult(1, "", outcome.message, 0)

        scrubbed_out = self.scrubber.scrub(stdout.decode("utf-8", errors="replace"), secrets)
        scrubbed_err = self.scrubber.scrub(stderr.decode("utf-8", errors="replace"), secrets)
        self._verify_scrubbed(scrubbed_out.text + scrubbed_err.text, secrets)

        # A negative return code means the child died from a signal
        exit_code = outcome.code if outcome.code >= 0 else 1
        return ExecutionResult(
            exit_code,
            scrubbed_out.text,
            scrubbed_err.text,
            scrubbed_out.redacted_count + scrubbed_err.redacted_count,
        )

    def _verify_scrubbed(self, output: str, secrets: Mapping[str, str]) -> None:
        for name, value in secrets.items():
            if value and value in output:
                logger.warning(
                    "SECURITY WARNING: secret %r may still be present in output despite "
                    "scrubbing. Possible causes: (1) the secret format does not match known "
                    "patterns, (2) a custom redact pattern is needed, or (3) output encoding "
                    "is bypassing detection.",
                    name,
                )


def _drain(stream: IO[bytes], chunks: List[bytes]) -> None:
    try:
        for chunk in iter(lambda: stream.read1(_READ_CHUNK), b""):
            chunks.append(chunk)
    finally:
        stream.close()
