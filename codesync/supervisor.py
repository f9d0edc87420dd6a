"""Run a single child process under a wall-clock timeout and output caps.

Security model:
  - The child runs with the privileges of the server process.  There is no
    filesystem, network or syscall isolation at this layer.  For a public
    deployment, run the server inside a container or jail.
  - The child is started in its own session.  A timeout or output overflow
    kills the whole process group, including anything it forked, and the
    group is killed again once the run is over so no descendant outlives it.
  - On POSIX, RLIMIT_CPU and RLIMIT_FSIZE are set in the child.
  - stdin is /dev/null; programs that wait for input see EOF immediately.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
import os
import signal
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
DEFAULT_MAX_FILE_BYTES = 16 * 1024 * 1024  # compiler output must fit

_READ_CHUNK_BYTES = 4096

Cleanup = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class ExecutionResult:
    """Outcome of one supervised process (or one whole language pipeline).

    ``exit_code`` is None whenever the process did not exit on its own:
    killed by the timeout watchdog or the output cap, terminated by a
    signal, or never started because the toolchain is missing.  Use
    ``timed_out``, ``toolchain_missing`` and ``signal`` to tell these apart.
    """

    exit_code: int | None
    signal: str | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    output_truncated: bool = False
    toolchain_missing: bool = False
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.output_truncated


class _StreamCapture:
    """Accumulates one output stream up to a byte budget."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> bool:
        """Append ``chunk``; return False once the budget is exhausted."""
        remaining = self.limit - len(self.data)
        if len(chunk) > remaining:
            self.data += chunk[:remaining]
            self.truncated = True
            return False
        self.data += chunk
        return True

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Force-kill the child's process group.

    The group outlives its leader, so this still reaches forked descendants
    after the direct child has exited.
    """
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        elif proc.returncode is None:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        # Nothing left in the group.
        pass


def _limits_setter(cpu_seconds: int, max_file_bytes: int):
    """Return a ``preexec_fn`` applying POSIX resource limits in the child."""
    if not hasattr(os, "fork"):
        return None

    def _set_limits() -> None:
        try:
            import resource

            resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
            resource.setrlimit(resource.RLIMIT_FSIZE, (max_file_bytes, max_file_bytes))
        except (ImportError, ValueError, OSError) as e:
            logger.warning(
                "Resource limits could not be applied (%s). Child runs with the wall-clock timeout only.",
                e,
            )

    return _set_limits


async def _run_cleanup(cleanup: Cleanup | None) -> None:
    if cleanup is None:
        return
    try:
        outcome = cleanup()
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.warning("Cleanup step failed; keeping the primary result", exc_info=True)


class ProcessSupervisor:
    """Spawn a command and wait for it without blocking the event loop.

    One ``execute`` call serves exactly one request.  The supervisor itself
    holds only its limits, so a single instance can be shared by any number
    of concurrent callers.

    ``cpu_limit_seconds`` and ``max_file_bytes`` become ``RLIMIT_CPU`` and
    ``RLIMIT_FSIZE`` in each child (POSIX only).  The CPU limit defaults to
    twice the wall-clock timeout, since runtimes like the JVM burn CPU on
    several threads at once.
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        cpu_limit_seconds: int | None = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.max_output_bytes = max_output_bytes
        if cpu_limit_seconds is None:
            cpu_limit_seconds = max(1, math.ceil(2 * timeout_ms / 1000))
        self.cpu_limit_seconds = cpu_limit_seconds
        self.max_file_bytes = max_file_bytes

    async def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | os.PathLike | None = None,
        cleanup: Cleanup | None = None,
    ) -> ExecutionResult:
        """Run ``command`` with ``args`` and return a structured result.

        Never raises for spawn failures: a missing binary comes back as
        ``toolchain_missing=True``.  ``cleanup`` runs before the result is
        returned on every path; its own failures are logged and ignored.
        """
        start = time.monotonic()
        try:
            return await self._run(command, list(args), cwd, start)
        finally:
            await _run_cleanup(cleanup)

    async def _run(
        self,
        command: str,
        args: list[str],
        cwd: str | os.PathLike | None,
        start: float,
    ) -> ExecutionResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                preexec_fn=_limits_setter(self.cpu_limit_seconds, self.max_file_bytes),
            )
        except FileNotFoundError:
            logger.info("Toolchain binary not found: %s", command)
            return ExecutionResult(
                exit_code=None,
                stderr=f"{command}: command not found",
                toolchain_missing=True,
                duration_ms=_elapsed_ms(start),
            )
        except OSError as e:
            logger.warning("Failed to start %s: %s", command, e)
            return ExecutionResult(
                exit_code=None,
                stderr=f"Failed to start {command}: {e}",
                duration_ms=_elapsed_ms(start),
            )

        out = _StreamCapture(self.max_output_bytes)
        err = _StreamCapture(self.max_output_bytes)
        timed_out = False

        try:
            await asyncio.wait_for(
                self._communicate(proc, out, err), timeout=self.timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.info(
                "Killing %s (pid %d) after %d ms timeout",
                command,
                proc.pid,
                self.timeout_ms,
            )
            _kill(proc)
            await proc.wait()
        except asyncio.CancelledError:
            _kill(proc)
            raise
        # Descendants that detached from the pipes are still in the group.
        _kill(proc)

        returncode = proc.returncode
        exit_code: int | None = returncode
        signal_name = None
        if returncode is not None and returncode < 0:
            signal_name = _signal_name(-returncode)
            exit_code = None
        if timed_out:
            exit_code = None

        return ExecutionResult(
            exit_code=exit_code,
            signal=signal_name,
            stdout=out.text(),
            stderr=err.text(),
            timed_out=timed_out,
            output_truncated=out.truncated or err.truncated,
            duration_ms=_elapsed_ms(start),
        )

    async def _communicate(
        self,
        proc: asyncio.subprocess.Process,
        out: _StreamCapture,
        err: _StreamCapture,
    ) -> None:
        await asyncio.gather(
            _pump(proc, proc.stdout, out),
            _pump(proc, proc.stderr, err),
        )
        await proc.wait()


async def _pump(
    proc: asyncio.subprocess.Process,
    stream: asyncio.StreamReader,
    capture: _StreamCapture,
) -> None:
    """Copy one pipe into ``capture``; kill the child on overflow."""
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        if not capture.feed(chunk):
            logger.info(
                "Output cap of %d bytes exceeded by pid %d; killing",
                capture.limit,
                proc.pid,
            )
            _kill(proc)
            return


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
