# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Build Manager — Queues and runs rebuilds for the job server.

Rules:
  - at most one active build per journal; later requests wait in that
    journal's FIFO queue (bounded by MAX_QUEUE_PER_JOURNAL)
  - at most MAX_CONCURRENT_BUILDS builds run at once across journals
  - a request identical to one already queued returns the queued record
  - the last `history_size` records stay queryable by build id
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import shlex
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Union

from epiplane.core.config import settings
from epiplane.core.metrics import platform_metrics
from epiplane.rebuild.errors import ExitCode
from epiplane.rebuild.events import CollectingSink, EventSink
from epiplane.rebuild.executor import BuildJob, RebuildExecutor
from epiplane.rebuild.resource import ResourceDescriptor

logger = logging.getLogger("epi.jobs")

SECONDS_PER_QUEUED_BUILD = 30
API_ERROR_MESSAGE = "API error: Unable to fetch resource data"


class BuildStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat().replace("+00:00", "Z") if value else None


def estimate_wait(position: int) -> str:
    seconds = position * SECONDS_PER_QUEUED_BUILD
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}m"


@dataclass
class BuildRecord:
    build_id: str
    descriptor: ResourceDescriptor
    deploy: bool = False
    status: BuildStatus = BuildStatus.QUEUED
    phase: str = "queued"
    queued_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    output_path: Optional[str] = None
    error: Optional[str] = None
    deployed: bool = False
    deploy_error: Optional[str] = None
    api_errors: int = 0
    logs: List[str] = field(default_factory=list)
    output: List[str] = field(default_factory=list)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def journal_code(self) -> str:
        return self.descriptor.tenant_id

    def duration_label(self) -> str:
        if self.started_at is None:
            return "N/A"
        if self.completed_at is not None:
            return f"{(self.completed_at - self.started_at).total_seconds():.2f}s"
        return f"{(_now() - self.started_at).total_seconds():.2f}s (ongoing)"

    def progress(self) -> int:
        if self.status is BuildStatus.COMPLETED:
            return 100
        if self.status is BuildStatus.PROCESSING:
            return 50
        return 0

    def summary(self) -> Dict[str, Any]:
        return {
            "buildId": self.build_id,
            "journalCode": self.journal_code,
            "resourceType": self.descriptor.kind.value,
            "resourceId": self.descriptor.id,
            "pageName": self.descriptor.page_name,
        }

    def to_dict(self, log_tail: int = 20) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "buildId": self.build_id,
            "data": {
                **self.summary(),
                "deploy": self.deploy,
                "queuedAt": _iso(self.queued_at),
                "startedAt": _iso(self.started_at),
                "completedAt": _iso(self.completed_at),
                "duration": self.duration_label(),
                "outputPath": self.output_path,
                "deployed": self.deployed,
            },
            "progress": {"phase": self.phase, "percentage": self.progress()},
            "logs": self.logs[-log_tail:],
            "error": self.error,
        }


@dataclass
class SubmitResult:
    status: BuildStatus
    status_code: int
    record: BuildRecord
    queue_position: int = 0
    coalesced: bool = False


class _RecordSink(CollectingSink):
    """Mirrors executor events and output into a build record."""

    def __init__(self, record: BuildRecord) -> None:
        super().__init__()
        self._record = record

    def event(self, record: Dict[str, Any]) -> None:
        super().event(record)
        self._record.logs.append(json.dumps(record, ensure_ascii=False))
        if record.get("type") == "api_error":
            self._record.api_errors += 1
        else:
            self._record.phase = record.get("phase", self._record.phase)

    def output(self, stream: str, line: str) -> None:
        super().output(stream, line)
        if stream == "stderr":
            self._record.logs.append(f"ERROR: {line}")
        else:
            self._record.logs.append(line)
            self._record.output.append(line)


ExecutorFactory = Callable[[EventSink], RebuildExecutor]


def _default_executor(sink: EventSink) -> RebuildExecutor:
    return RebuildExecutor(sink=sink)


class BuildManager:
    """
    Usage:
        manager = BuildManager()
        result = manager.submit(descriptor, deploy=True)   # 202 / 203 / 503
        await manager.wait(result.record)
    """

    def __init__(
        self,
        executor_factory: ExecutorFactory = _default_executor,
        max_queue_per_journal: Optional[int] = None,
        max_concurrent: Optional[int] = None,
        deploy_command: Optional[str] = None,
        cwd: Union[str, Path, None] = None,
        history_size: int = 100,
    ) -> None:
        self._executor_factory = executor_factory
        self.max_queue_per_journal = (
            max_queue_per_journal if max_queue_per_journal is not None else settings.MAX_QUEUE_PER_JOURNAL
        )
        self.max_concurrent = max_concurrent or settings.MAX_CONCURRENT_BUILDS
        self.deploy_command = settings.DEPLOY_COMMAND if deploy_command is None else deploy_command
        self.cwd = Path(cwd) if cwd is not None else Path(settings.PROJECT_ROOT)
        self.history_size = history_size

        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._active: Dict[str, BuildRecord] = {}
        self._queues: Dict[str, Deque[BuildRecord]] = {}
        self._history: "OrderedDict[str, BuildRecord]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._started = time.time()
        self.stats = {"totalBuilds": 0, "successfulBuilds": 0, "failedBuilds": 0, "apiErrors": 0}

    # ── Submission ──────────────────────────────────────────

    def new_build_id(self, descriptor: ResourceDescriptor) -> str:
        base = (
            f"{descriptor.tenant_id}-{descriptor.kind.value}-"
            f"{descriptor.identifier}-{int(time.time() * 1000)}"
        )
        build_id, n = base, 1
        while build_id in self._history:
            n += 1
            build_id = f"{base}-{n}"
        return build_id

    def submit(self, descriptor: ResourceDescriptor, deploy: bool = False) -> SubmitResult:
        """Start, queue, coalesce or reject a build. Must run inside the event loop."""
        journal = descriptor.tenant_id
        queue = self._queues.setdefault(journal, deque())

        for position, queued in enumerate(queue):
            if queued.descriptor.key == descriptor.key and queued.deploy == deploy:
                logger.info("Build %s coalesced with queued request", queued.build_id)
                platform_metrics.inc("builds_coalesced", journal=journal)
                return SubmitResult(BuildStatus.QUEUED, 203, queued, position, coalesced=True)

        record = BuildRecord(build_id=self.new_build_id(descriptor), descriptor=descriptor, deploy=deploy)
        self._remember(record)

        if journal in self._active:
            position = len(queue)
            if position >= self.max_queue_per_journal:
                record.status = BuildStatus.REJECTED
                record.phase = "rejected"
                record.error = f"Queue full for journal {journal} (max {self.max_queue_per_journal})"
                record.completed_at = _now()
                record.done.set()
                logger.warning("Build %s rejected: %s", record.build_id, record.error)
                platform_metrics.inc("builds_rejected", journal=journal)
                return SubmitResult(BuildStatus.REJECTED, 503, record, position)

            queue.append(record)
            logger.info("Build %s queued (position %d)", record.build_id, position + 1)
            self._update_gauges()
            return SubmitResult(BuildStatus.QUEUED, 203, record, position)

        self._start(record)
        logger.info("Build %s started immediately", record.build_id)
        return SubmitResult(BuildStatus.PROCESSING, 202, record, 0)

    async def wait(self, record: BuildRecord, timeout: Optional[float] = None) -> BuildRecord:
        await asyncio.wait_for(record.done.wait(), timeout)
        return record

    async def run(self, descriptor: ResourceDescriptor, deploy: bool = False) -> BuildRecord:
        """Submit and wait for the terminal state."""
        result = self.submit(descriptor, deploy=deploy)
        return await self.wait(result.record)

    def get(self, build_id: str) -> Optional[BuildRecord]:
        return self._history.get(build_id)

    def queue_length(self, journal: str) -> int:
        return len(self._queues.get(journal, ()))

    def is_building(self, journal: str) -> bool:
        return journal in self._active

    async def shutdown(self) -> None:
        """Cancel running builds (server shutdown)."""
        self._closing = True
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ── Execution ───────────────────────────────────────────

    def _start(self, record: BuildRecord) -> None:
        record.status = BuildStatus.PROCESSING
        record.phase = "starting"
        record.started_at = _now()
        self._active[record.journal_code] = record
        task = asyncio.create_task(self._run(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._update_gauges()

    async def _run(self, record: BuildRecord) -> None:
        try:
            async with self._slots:
                await self._execute(record)
        except asyncio.CancelledError:
            record.status = BuildStatus.FAILED
            record.phase = "failed"
            record.error = "Build cancelled"
            raise
        except Exception as e:
            # Keep the server alive for the next request
            logger.exception("Unexpected error in build %s", record.build_id)
            record.status = BuildStatus.FAILED
            record.phase = "failed"
            record.error = f"Unexpected error: {e}"
            self.stats["failedBuilds"] += 1
        finally:
            record.completed_at = record.completed_at or _now()
            record.done.set()
            self._active.pop(record.journal_code, None)
            self._start_next(record.journal_code)

    def _start_next(self, journal: str) -> None:
        queue = self._queues.get(journal)
        if not queue or self._closing:
            self._queues.pop(journal, None)
            self._update_gauges()
            return
        record = queue.popleft()
        logger.info("Processing queued build %s (%d remaining in queue)", record.build_id, len(queue))
        self._start(record)

    async def _execute(self, record: BuildRecord) -> None:
        d = record.descriptor
        logger.info("Executing build %s: %s %s for %s",
                    record.build_id, d.kind.value, d.identifier, d.tenant_id)
        self.stats["totalBuilds"] += 1
        platform_metrics.inc("builds_total", journal=d.tenant_id)

        executor = self._executor_factory(_RecordSink(record))
        job: BuildJob = await executor.run(d.tenant_id, d.kind.value, d.id, d.page_name)

        record.completed_at = _now()
        record.exit_code = job.exit_code
        if job.api_errors:
            self.stats["apiErrors"] += 1

        if job.exit_code == ExitCode.SUCCESS:
            record.status = BuildStatus.COMPLETED
            record.phase = "completed"
            record.output_path = job.output_path
            self.stats["successfulBuilds"] += 1
            logger.info("Build %s completed successfully in %s", record.build_id, record.duration_label())
            if record.deploy and self.deploy_command:
                await self._deploy(record)
            return

        record.status = BuildStatus.FAILED
        if job.exit_code == ExitCode.API_ERROR:
            record.phase = "api_error"
            record.error = API_ERROR_MESSAGE
            if not job.api_errors:
                self.stats["apiErrors"] += 1
            logger.error("Build %s failed due to API error", record.build_id)
        else:
            record.phase = "failed"
            record.error = job.error or f"Build failed with exit code {job.exit_code}"
            self.stats["failedBuilds"] += 1
            logger.error("Build %s failed with code %s", record.build_id, job.returncode or job.exit_code)

    async def _deploy(self, record: BuildRecord) -> None:
        logger.info("Deploying build %s...", record.build_id)
        record.phase = "deploying"
        argv = shlex.split(self.deploy_command) + [record.output_path or ""]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(self.cwd),
            )
            out, _ = await proc.communicate()
        except OSError as e:
            record.deployed = False
            record.deploy_error = f"Deployment could not start: {e}"
            record.logs.append(record.deploy_error)
            logger.error("Build %s deployment failed: %s", record.build_id, e)
            return

        for line in out.decode("utf-8", errors="replace").splitlines():
            if line.strip():
                record.logs.append(line)

        record.phase = "completed"
        if proc.returncode == 0:
            record.deployed = True
            logger.info("Build %s deployed successfully", record.build_id)
        else:
            record.deployed = False
            record.deploy_error = f"Deployment failed with code {proc.returncode}"
            record.logs.append(record.deploy_error)
            logger.error("Build %s deployment failed", record.build_id)

    # ── Bookkeeping ─────────────────────────────────────────

    def _remember(self, record: BuildRecord) -> None:
        self._history[record.build_id] = record
        while len(self._history) > self.history_size:
            self._history.popitem(last=False)

    def _update_gauges(self) -> None:
        platform_metrics.set_gauge("active_builds", len(self._active))
        platform_metrics.set_gauge("queued_builds", sum(len(q) for q in self._queues.values()))

    def uptime(self) -> str:
        elapsed = int(time.time() - self._started)
        return f"{elapsed // 3600}h {(elapsed % 3600) // 60}m"

    def status(self) -> Dict[str, Any]:
        active = [
            {**r.summary(), "phase": r.phase, "startedAt": _iso(r.started_at)}
            for r in self._active.values()
        ]
        queued = [
            {**r.summary(), "queuePosition": i + 1, "queuedAt": _iso(r.queued_at)}
            for q in self._queues.values()
            for i, r in enumerate(q)
        ]
        by_journal: Dict[str, Dict[str, Any]] = {}
        for journal in set(self._active) | {j for j, q in self._queues.items() if q}:
            r = self._active.get(journal)
            by_journal[journal] = {
                "active": {**r.summary(), "phase": r.phase} if r else None,
                "queued": self.queue_length(journal),
            }
        return {
            "uptime": self.uptime(),
            "builds": {
                "active": len(active),
                "queued": len(queued),
                "total": self.stats["totalBuilds"],
                "successful": self.stats["successfulBuilds"],
                "failed": self.stats["failedBuilds"],
                "apiErrors": self.stats["apiErrors"],
            },
            "activeBuilds": active,
            "queuedBuilds": queued,
            "byJournal": by_journal,
        }
