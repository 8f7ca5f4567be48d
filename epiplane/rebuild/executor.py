# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Rebuild Executor — Runs one targeted static build for one journal.

    validating → env_loading → configuring → executing → succeeded | failed

The executor never looks inside the build. It composes an environment
(process env, journal file, identity keys, one scoped targeting variable)
and hands it to the external build command; the build reads the scoped
variable to narrow what it generates.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from epiplane.core.config import settings
from epiplane.core.metrics import platform_metrics
from epiplane.core.registry import env_file_path, read_env_file
from epiplane.rebuild import events as ev
from epiplane.rebuild.events import BuildPhase, EventSink, StreamSink
from epiplane.rebuild.errors import ConfigurationError, ExitCode, RebuildError
from epiplane.rebuild.resource import SCOPED_ENV_VARS, ResourceDescriptor

logger = logging.getLogger("epi.rebuild")

IDENTITY_KEYS = ("NEXT_PUBLIC_JOURNAL_CODE", "NEXT_PUBLIC_JOURNAL_RVCODE")
SUMMARY_FILE_VAR = "REBUILD_SUMMARY_FILE"


@dataclass
class BuildJob:
    """Outcome of one executor run."""

    journal_code: Optional[str]
    descriptor: Optional[ResourceDescriptor] = None
    phase: BuildPhase = BuildPhase.VALIDATING
    exit_code: Optional[int] = None
    returncode: Optional[int] = None
    output_path: Optional[str] = None
    duration: float = 0.0
    error: Optional[str] = None
    api_errors: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    spawned: bool = False

    @property
    def succeeded(self) -> bool:
        return self.phase is BuildPhase.SUCCEEDED

    @property
    def duration_label(self) -> str:
        return f"{self.duration:.2f}s"


class RebuildExecutor:
    """
    Usage:
        executor = RebuildExecutor()
        job = await executor.run("epijinfo", "article", "12")
        sys.exit(job.exit_code)
    """

    def __init__(
        self,
        assets_dir: Union[str, Path, None] = None,
        build_command: Optional[str] = None,
        cwd: Union[str, Path, None] = None,
        output_limit: Optional[int] = None,
        sink: Optional[EventSink] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.assets_dir = Path(assets_dir) if assets_dir is not None else settings.assets_path
        self.build_command = build_command or settings.BUILD_COMMAND
        self.cwd = Path(cwd) if cwd is not None else Path(settings.PROJECT_ROOT)
        self.output_limit = output_limit or settings.BUILD_OUTPUT_LIMIT
        self.sink: EventSink = sink or StreamSink()
        self._base_env = base_env

    # ── Phases ──────────────────────────────────────────────

    async def run(
        self,
        journal: Optional[str],
        kind: Optional[str],
        resource_id: Optional[str] = None,
        page_name: Optional[str] = None,
    ) -> BuildJob:
        job = BuildJob(journal_code=journal)

        try:
            descriptor = ResourceDescriptor.parse(journal, kind, resource_id, page_name)
            job.descriptor = descriptor
            env_path = env_file_path(descriptor.tenant_id, self.assets_dir)
            if not env_path.is_file():
                raise ConfigurationError(
                    f"Journal environment file not found: {env_path}",
                    journal_code=descriptor.tenant_id,
                )
        except RebuildError as e:
            return self._fail(job, e)

        self._transition(
            job, BuildPhase.ENV_LOADING, ev.BUILD_START,
            resourceType=descriptor.kind.value,
            resourceId=descriptor.id,
            pageName=descriptor.page_name,
        )

        try:
            tenant_env = read_env_file(env_path)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            return self._fail(job, ConfigurationError(
                f"Failed to load environment file: {e}", journal_code=descriptor.tenant_id,
            ))

        job.env = self.compose_env(descriptor, tenant_env)
        self._transition(
            job, BuildPhase.CONFIGURING, ev.ENV_LOADED,
            message=f"Environment loaded for journal: {descriptor.tenant_id}",
        )

        self._transition(
            job, BuildPhase.EXECUTING, ev.BUILD_EXECUTING,
            message=descriptor.describe(),
            config={
                "journalCode": descriptor.tenant_id,
                "resourceType": descriptor.kind.value,
                "resourceId": descriptor.id or "N/A",
                "pageName": descriptor.page_name or "N/A",
                "targetedBuild": bool(descriptor.scoped_env()),
            },
        )
        return await self._execute(job, descriptor)

    def compose_env(self, descriptor: ResourceDescriptor, tenant_env: Mapping[str, str]) -> Dict[str, str]:
        """process env ⊕ journal file ⊕ identity keys ⊕ scoped variable."""
        base = self._base_env if self._base_env is not None else os.environ
        env = dict(base)
        env.update(tenant_env)
        for key in IDENTITY_KEYS:
            env[key] = descriptor.tenant_id
        # Only the requested scope may reach the build
        for var in SCOPED_ENV_VARS.values():
            env.pop(var, None)
        env.update(descriptor.scoped_env())
        return env

    async def _execute(self, job: BuildJob, descriptor: ResourceDescriptor) -> BuildJob:
        started = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="epi-rebuild-") as tmp:
            summary_path = Path(tmp) / "summary.json"
            env = dict(job.env)
            env[SUMMARY_FILE_VAR] = str(summary_path)

            try:
                proc = await asyncio.create_subprocess_shell(
                    self.build_command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                    cwd=str(self.cwd),
                    limit=self.output_limit,
                )
            except OSError as e:
                job.duration = time.monotonic() - started
                job.error = f"Unexpected process error: {e}"
                return self._finish(
                    job, BuildPhase.FAILED, ExitCode.BUILD_ERROR, ev.PROCESS_ERROR,
                    message=job.error, error=repr(e),
                )

            job.spawned = True
            await asyncio.gather(
                self._pump(job, proc.stdout, "stdout"),
                self._pump(job, proc.stderr, "stderr"),
            )
            returncode = await proc.wait()
            self._read_summary(job, summary_path)

        job.returncode = returncode
        job.duration = time.monotonic() - started
        platform_metrics.observe("build", job.duration * 1000)

        common = {
            "resourceType": descriptor.kind.value,
            "resourceId": descriptor.id,
            "pageName": descriptor.page_name,
            "duration": job.duration_label,
        }
        if returncode == 0:
            job.output_path = descriptor.output_path()
            return self._finish(
                job, BuildPhase.SUCCEEDED, ExitCode.SUCCESS, ev.BUILD_SUCCESS,
                message=f"Build completed successfully in {job.duration_label}",
                outputPath=job.output_path,
                **common,
            )

        job.error = f"Build failed with exit code {returncode}"
        return self._finish(
            job, BuildPhase.FAILED, ExitCode.BUILD_ERROR, ev.BUILD_FAILED,
            message=job.error, exitCode=returncode, **common,
        )

    # ── Output handling ─────────────────────────────────────

    async def _pump(self, job: BuildJob, stream: Optional[asyncio.StreamReader], name: str) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning(
                    "Build output line exceeded %d bytes, dropped", self.output_limit,
                    extra={"tenant_id": job.journal_code, "phase": job.phase.value},
                )
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            if name == "stdout" and ev.is_connectivity_error(line):
                self._api_error(job, line)
            self.sink.output(name, line)

    def _read_summary(self, job: BuildJob, path: Path) -> None:
        """Structured build summary: {"apiErrors": [...]}."""
        if not path.is_file():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as e:
            logger.warning("Unreadable build summary %s: %s", path, e,
                           extra={"tenant_id": job.journal_code})
            return
        entries = data.get("apiErrors") if isinstance(data, dict) else None
        for entry in entries or []:
            details = entry if isinstance(entry, str) else json.dumps(entry, ensure_ascii=False)
            self._api_error(job, details, source="summary")

    def _api_error(self, job: BuildJob, details: str, source: str = "output") -> None:
        job.api_errors.append(details)
        platform_metrics.inc("build_api_errors", journal=job.journal_code)
        self._emit(
            job, ev.API_ERROR,
            message="API connection error detected during build",
            details=details,
            source=source,
        )

    # ── Events ──────────────────────────────────────────────

    def _emit(self, job: BuildJob, event_type: str, **fields: Any) -> None:
        self.sink.event(ev.make_event(event_type, job.phase, journalCode=job.journal_code, **fields))

    def _transition(self, job: BuildJob, phase: BuildPhase, event_type: str, **fields: Any) -> None:
        job.phase = phase
        logger.info(
            "%s: %s", job.journal_code, event_type,
            extra={"tenant_id": job.journal_code, "phase": phase.value,
                   "resource": job.descriptor.key if job.descriptor else None},
        )
        self._emit(job, event_type, **fields)

    def _fail(self, job: BuildJob, error: RebuildError) -> BuildJob:
        """Terminal failure before the build ran (exit 3)."""
        job.error = error.message
        logger.error(
            "Rebuild rejected: %s", error.message,
            extra={"tenant_id": job.journal_code, "phase": job.phase.value},
        )
        # The event reports the phase in which the failure happened
        self._emit(job, ev.ERROR, message=error.message)
        job.phase = BuildPhase.FAILED
        job.exit_code = int(error.exit_code)
        platform_metrics.inc("builds_rejected", journal=job.journal_code)
        return job

    def _finish(
        self,
        job: BuildJob,
        phase: BuildPhase,
        exit_code: ExitCode,
        event_type: str,
        **fields: Any,
    ) -> BuildJob:
        job.phase = phase
        job.exit_code = int(exit_code)
        platform_metrics.inc(
            "builds_succeeded" if phase is BuildPhase.SUCCEEDED else "builds_failed",
            journal=job.journal_code,
        )
        log = logger.info if phase is BuildPhase.SUCCEEDED else logger.error
        log(
            "%s: %s (%s)", job.journal_code, event_type, job.duration_label,
            extra={"tenant_id": job.journal_code, "phase": phase.value,
                   "resource": job.descriptor.key if job.descriptor else None},
        )
        self._emit(job, event_type, **fields)
        return job
