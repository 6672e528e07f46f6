# shipline/pipeline/executor.py
"""
Shell command executor for stage commands.

Runs one command as an asyncio subprocess, streams merged stdout/stderr to a
redacted per-attempt log file, enforces a timeout and collects the outputs
the command writes to the file named by $SHIPLINE_OUTPUT.
"""

import asyncio
import codecs
import logging
import os
import signal
import tempfile
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from shipline.errors import OutputContractError
from shipline.pipeline.secrets import redact

logger = logging.getLogger(__name__)

OUTPUT_ENV_VAR = "SHIPLINE_OUTPUT"
TIMEOUT_EXIT_CODE = 124
_CHUNK_SIZE = 4096
_MAX_PENDING_CHARS = 65_536


@dataclass
class CommandResult:
    """
    Result of running one command.

    Attributes:
        exit_code: Process exit status (124 on timeout)
        output: Tail of the merged, redacted stdout/stderr
        outputs: key=value pairs written to $SHIPLINE_OUTPUT
        duration: Wall-clock seconds
        timed_out: Whether the command was killed on timeout
        log_path: Where the full log was written
    """

    exit_code: int
    output: str
    outputs: dict[str, str] = field(default_factory=dict)
    duration: float = 0.0
    timed_out: bool = False
    log_path: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def parse_output_file(text: str) -> dict[str, str]:
    """
    Parse key=value output lines.

    Blank lines and '#' comments are ignored; the last assignment wins.

    Raises:
        OutputContractError: On a line without '=' or with an empty key
    """
    outputs: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            raise OutputContractError(
                f"Malformed output line {lineno}: {stripped[:80]!r} (expected key=value)"
            )
        outputs[key] = value
    return outputs


class _OutputSink:
    """Line-buffers decoded output, redacts it, writes the log and keeps a tail."""

    def __init__(self, log: TextIO, redact_values: list[str], max_chars: int) -> None:
        self._log = log
        self._redact_values = redact_values
        self._max_chars = max_chars
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._tail = ""

    def feed(self, chunk: bytes) -> None:
        self._pending += self._decoder.decode(chunk)
        if "\n" in self._pending:
            complete, self._pending = self._pending.rsplit("\n", 1)
            self._emit(complete + "\n")
        elif len(self._pending) > _MAX_PENDING_CHARS:
            self._emit(self._pending)
            self._pending = ""

    def close(self) -> None:
        self._pending += self._decoder.decode(b"", final=True)
        if self._pending:
            self._emit(self._pending)
            self._pending = ""

    def note(self, text: str) -> None:
        self._emit(text)

    def _emit(self, text: str) -> None:
        clean = redact(text, self._redact_values)
        self._log.write(clean)
        self._log.flush()
        if self._max_chars:
            self._tail = (self._tail + clean)[-self._max_chars:]

    @property
    def tail(self) -> str:
        return self._tail


class CommandExecutor:
    """
    Runs stage commands through a shell.

    Each command runs in its own process group so a timeout kills the whole
    tree, not just the shell.
    """

    def __init__(
        self,
        shell: str = "/bin/sh",
        logs_dir: str | Path = ".shipline/logs",
        max_output_chars: int = 20_000,
        secret_env_prefix: str | None = None,
    ) -> None:
        """
        Initialize command executor.

        Args:
            shell: Shell binary invoked as `<shell> -c <command>`
            logs_dir: Root directory for stage logs
            max_output_chars: Tail of output kept in CommandResult.output
            secret_env_prefix: Variables of the parent environment starting with
                this prefix are never inherited by commands
        """
        self._shell = shell
        self._logs_dir = Path(logs_dir)
        self._max_output_chars = max_output_chars
        self._secret_env_prefix = secret_env_prefix or None

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def log_path_for(self, run_id: str, stage: str, attempt: int | str) -> Path:
        """Location of the log for one attempt of one stage."""
        return self._logs_dir / run_id / f"{stage}.{attempt}.log"

    async def run(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cwd: str | None = None,
        log_path: Path | None = None,
        redact_values: Iterable[str] = (),
    ) -> CommandResult:
        """
        Run a command to completion (or timeout).

        Args:
            command: Shell command line
            env: Extra environment (merged over the inherited environment)
            timeout: Seconds before the process group is killed (None = no limit)
            cwd: Working directory
            log_path: Log file (a temp file when None)
            redact_values: Secret values masked in the log and the output tail

        Returns:
            CommandResult (a non-zero exit is NOT an exception)

        Raises:
            OutputContractError: If $SHIPLINE_OUTPUT contains malformed lines
        """
        secrets = [v for v in redact_values if v]
        fd, output_file = tempfile.mkstemp(prefix="shipline-output-", suffix=".env")
        os.close(fd)

        if log_path is None:
            log_fd, log_name = tempfile.mkstemp(prefix="shipline-", suffix=".log")
            os.close(log_fd)
            log_path = Path(log_name)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        child_env = {**self.inherited_env(), **(env or {}), OUTPUT_ENV_VAR: output_file}
        start = time.monotonic()
        timed_out = False

        try:
            with log_path.open("w", encoding="utf-8") as log:
                sink = _OutputSink(log, secrets, self._max_output_chars)
                sink.note(f"$ {command}\n")

                proc = await asyncio.create_subprocess_exec(
                    self._shell,
                    "-c",
                    command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    env=child_env,
                    cwd=cwd,
                    start_new_session=True,
                )

                try:
                    await asyncio.wait_for(self._pump(proc, sink), timeout)
                    exit_code = await proc.wait()
                except asyncio.TimeoutError:
                    timed_out = True
                    self._kill(proc)
                    await proc.wait()
                    exit_code = TIMEOUT_EXIT_CODE
                    sink.close()
                    sink.note(f"\n[shipline] killed after {timeout:g}s timeout\n")
                except asyncio.CancelledError:
                    self._kill(proc)
                    await proc.wait()
                    raise

                duration = time.monotonic() - start
                sink.note(f"\n[shipline] exit={exit_code} duration={duration:.1f}s\n")

            outputs = {} if timed_out else parse_output_file(
                Path(output_file).read_text(encoding="utf-8", errors="replace")
            )
        finally:
            try:
                os.unlink(output_file)
            except OSError:
                pass

        logger.debug(f"Command finished: exit={exit_code} timed_out={timed_out} in {duration:.1f}s")
        return CommandResult(
            exit_code=exit_code,
            output=sink.tail,
            outputs=outputs,
            duration=duration,
            timed_out=timed_out,
            log_path=str(log_path),
        )

    def inherited_env(self) -> dict[str, str]:
        """The parent environment minus secret-store variables."""
        if not self._secret_env_prefix:
            return dict(os.environ)
        return {k: v for k, v in os.environ.items() if not k.startswith(self._secret_env_prefix)}

    async def _pump(self, proc: asyncio.subprocess.Process, sink: _OutputSink) -> None:
        stream = proc.stdout
        if stream is None:
            raise RuntimeError("Subprocess was started without a stdout pipe")
        while True:
            chunk = await stream.read(_CHUNK_SIZE)
            if not chunk:
                break
            sink.feed(chunk)
        sink.close()

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                proc.kill()
            except ProcessLookupError:
                pass
