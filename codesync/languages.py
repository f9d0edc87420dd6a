"""Per-language compile/run pipelines built on ProcessSupervisor."""

from __future__ import annotations

import abc
import logging
import shutil
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Sequence

from codesync.supervisor import ExecutionResult, ProcessSupervisor

logger = logging.getLogger(__name__)


class Language(str, Enum):
    """Languages the server can execute.

    Editor language tags outside this set (``typescript``, ``markdown``...)
    map to ``UNSUPPORTED`` rather than falling through to a default runner.
    """

    JAVASCRIPT = "javascript"
    PYTHON = "python"
    JAVA = "java"
    CPP = "cpp"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_tag(cls, tag: object) -> "Language":
        if not isinstance(tag, str):
            return cls.UNSUPPORTED
        normalized = tag.strip().lower()
        normalized = _ALIASES.get(normalized, normalized)
        if normalized == cls.UNSUPPORTED.value:
            return cls.UNSUPPORTED
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNSUPPORTED


_ALIASES = {
    "js": "javascript",
    "node": "javascript",
    "py": "python",
    "python3": "python",
    "c++": "cpp",
}


def _remove_workspace(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


class LanguageAdapter(abc.ABC):
    """Pipeline for one language.

    ``run`` owns the temporary workspace: it is created fresh for every call
    and removed before the result is returned, whichever step ended the
    pipeline.
    """

    language: Language
    source_name: str
    display_name: str

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        workspace_root: str | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.workspace_root = workspace_root

    async def run(self, code: str) -> ExecutionResult:
        start = time.monotonic()
        workspace = Path(
            tempfile.mkdtemp(
                prefix=f"codesync-{self.language.value}-", dir=self.workspace_root
            )
        )
        try:
            try:
                (workspace / self.source_name).write_text(code, encoding="utf-8")
            except OSError as e:
                logger.error("Could not write source into %s: %s", workspace, e)
                result = ExecutionResult(
                    exit_code=None, stderr=f"Could not prepare workspace: {e}"
                )
            else:
                result = await self.pipeline(workspace)
        finally:
            _remove_workspace(workspace)

        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    @abc.abstractmethod
    async def pipeline(self, workspace: Path) -> ExecutionResult:
        """Compile (if needed) and run the source already written to ``workspace``."""
        raise NotImplementedError

    async def _first_available(
        self,
        candidates: Sequence[str],
        args: Sequence[str],
        workspace: Path,
    ) -> ExecutionResult:
        """Run the first candidate binary that exists on this host.

        Falls through to the next candidate only when the binary is missing;
        a candidate that starts and then fails is the final answer.
        """
        result = None
        for command in candidates:
            result = await self.supervisor.execute(command, args, cwd=workspace)
            if not result.toolchain_missing:
                return result
            logger.debug("%s not available, trying next candidate", command)

        tried = ", ".join(candidates)
        return ExecutionResult(
            exit_code=None,
            stderr=(
                f"No {self.display_name} toolchain found on the server "
                f"(tried: {tried})."
            ),
            toolchain_missing=True,
            duration_ms=result.duration_ms if result else 0,
        )


class JavaScriptAdapter(LanguageAdapter):
    """Script-run: hand the source file straight to node."""

    language = Language.JAVASCRIPT
    source_name = "main.js"
    display_name = "JavaScript"

    def __init__(self, supervisor, workspace_root=None, interpreter="node"):
        super().__init__(supervisor, workspace_root)
        self.interpreter = interpreter

    async def pipeline(self, workspace):
        return await self._first_available(
            [self.interpreter], [self.source_name], workspace
        )


class PythonAdapter(LanguageAdapter):
    """Interpreted with fallback: ``python3`` first, then ``python``."""

    language = Language.PYTHON
    source_name = "main.py"
    display_name = "Python"

    def __init__(
        self,
        supervisor,
        workspace_root=None,
        interpreters: Sequence[str] = ("python3", "python"),
    ):
        super().__init__(supervisor, workspace_root)
        self.interpreters = tuple(interpreters)

    async def pipeline(self, workspace):
        return await self._first_available(
            self.interpreters, ["-u", self.source_name], workspace
        )


class CompiledLanguageAdapter(LanguageAdapter):
    """Compile-then-run.

    The compile step and the run step each get the supervisor's full
    timeout and output budget.  When compilation does not succeed its
    result is returned as-is and nothing is executed.
    """

    compilers: Sequence[str]

    @abc.abstractmethod
    def compile_args(self, workspace: Path) -> list[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def run_command(self, workspace: Path) -> tuple[str, list[str]]:
        raise NotImplementedError

    async def pipeline(self, workspace):
        compiled = await self._first_available(
            self.compilers, self.compile_args(workspace), workspace
        )
        if not compiled.succeeded:
            logger.debug(
                "%s compile step failed (exit=%s); skipping run",
                self.display_name,
                compiled.exit_code,
            )
            return compiled

        command, args = self.run_command(workspace)
        return await self._first_available([command], args, workspace)


class JavaAdapter(CompiledLanguageAdapter):
    """``javac Main.java`` then ``java Main``; the class must be ``Main``."""

    language = Language.JAVA
    source_name = "Main.java"
    display_name = "Java"

    def __init__(self, supervisor, workspace_root=None, javac="javac", java="java"):
        super().__init__(supervisor, workspace_root)
        self.compilers = (javac,)
        self.java = java

    def compile_args(self, workspace):
        return [self.source_name]

    def run_command(self, workspace):
        return self.java, ["-cp", str(workspace), "Main"]


class CppAdapter(CompiledLanguageAdapter):
    """``g++`` (falling back to ``clang++``) then the produced binary."""

    language = Language.CPP
    source_name = "main.cpp"
    display_name = "C++"
    binary_name = "main"

    def __init__(
        self,
        supervisor,
        workspace_root=None,
        compilers: Sequence[str] = ("g++", "clang++"),
    ):
        super().__init__(supervisor, workspace_root)
        self.compilers = tuple(compilers)

    def compile_args(self, workspace):
        return ["-std=c++17", "-O2", "-o", self.binary_name, self.source_name]

    def run_command(self, workspace):
        return str(workspace / self.binary_name), []
