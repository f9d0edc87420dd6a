"""Dispatch execution requests to the adapter for their language.

Executed code is NOT isolated from the host: it runs with the server's
privileges and full filesystem and network access.  Deploy behind a
container or jail if the server is reachable by untrusted users.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping

from codesync.config import Settings
from codesync.languages import (
    CppAdapter,
    JavaAdapter,
    JavaScriptAdapter,
    Language,
    LanguageAdapter,
    PythonAdapter,
)
from codesync.supervisor import ExecutionResult, ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class ExecutionRequest:
    """One run-code invocation. Never stored."""

    room_id: str
    code: str
    language: str


def default_adapters(
    supervisor: ProcessSupervisor, workspace_root: str | None = None
) -> dict[Language, LanguageAdapter]:
    """Bind every executable language to its pipeline."""
    return {
        Language.JAVASCRIPT: JavaScriptAdapter(supervisor, workspace_root),
        Language.PYTHON: PythonAdapter(supervisor, workspace_root),
        Language.JAVA: JavaAdapter(supervisor, workspace_root),
        Language.CPP: CppAdapter(supervisor, workspace_root),
    }


class ExecutionSandbox:
    """Run code in whichever language it was submitted in.

    Never raises for a bad request: unsupported languages and missing
    toolchains come back as ordinary results with ``exit_code=None`` and an
    explanatory stderr.

    ``max_concurrent_runs`` > 0 bounds how many executions may be in flight
    at once; further requests wait for a slot.  The default (0) imposes no
    limit.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor | None = None,
        adapters: Mapping[Language, LanguageAdapter] | None = None,
        workspace_root: str | None = None,
        max_concurrent_runs: int = 0,
    ) -> None:
        self.supervisor = supervisor or ProcessSupervisor()
        self.adapters = dict(
            adapters
            if adapters is not None
            else default_adapters(self.supervisor, workspace_root)
        )
        self._slots = (
            asyncio.Semaphore(max_concurrent_runs) if max_concurrent_runs > 0 else None
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExecutionSandbox":
        supervisor = ProcessSupervisor(
            timeout_ms=settings.exec_timeout_ms,
            max_output_bytes=settings.max_output_bytes,
            max_file_bytes=settings.max_file_bytes,
        )
        return cls(
            supervisor=supervisor,
            workspace_root=settings.workspace_root,
            max_concurrent_runs=settings.max_concurrent_runs,
        )

    @property
    def supported_languages(self) -> list[str]:
        return sorted(lang.value for lang in self.adapters)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        language = Language.from_tag(request.language)
        adapter = self.adapters.get(language)
        if adapter is None:
            logger.info(
                "Room %s: refusing to run unsupported language %r",
                request.room_id,
                request.language,
            )
            return ExecutionResult(
                exit_code=None,
                stderr=f"Execution is not supported for language '{request.language}'.",
            )

        logger.info(
            "Room %s: running %d chars of %s",
            request.room_id,
            len(request.code),
            language.value,
        )
        if self._slots is None:
            result = await adapter.run(request.code)
        else:
            async with self._slots:
                result = await adapter.run(request.code)

        logger.info(
            "Room %s: %s run finished exit=%s timed_out=%s truncated=%s in %d ms",
            request.room_id,
            language.value,
            result.exit_code,
            result.timed_out,
            result.output_truncated,
            result.duration_ms,
        )
        return result
