# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.
"""Unit tests for the build manager (queueing, coalescing, deploy)."""

import asyncio
import shlex
import sys

import pytest

from epiplane.rebuild.events import BuildPhase, make_event
from epiplane.rebuild.executor import BuildJob
from epiplane.rebuild.manager import BuildManager, BuildStatus, estimate_wait
from epiplane.rebuild.resource import ResourceDescriptor


class FakeExecutor:
    """Stands in for RebuildExecutor; blocks until its gate opens."""

    def __init__(self, sink, gate=None, exit_code=0, calls=None, api_errors=()):
        self.sink = sink
        self.gate = gate
        self.exit_code = exit_code
        self.calls = calls if calls is not None else []
        self.api_errors = list(api_errors)

    async def run(self, journal, kind, resource_id=None, page_name=None):
        self.calls.append((journal, kind, resource_id, page_name))
        self.sink.event(make_event("build_start", BuildPhase.ENV_LOADING, journalCode=journal))
        self.sink.output("stdout", f"building {kind} {resource_id or page_name or ''}".strip())
        if self.gate is not None:
            await self.gate.wait()
        descriptor = ResourceDescriptor.parse(journal, kind, resource_id, page_name)
        job = BuildJob(journal_code=journal, descriptor=descriptor, exit_code=self.exit_code)
        job.api_errors = self.api_errors
        if self.exit_code == 0:
            job.phase = BuildPhase.SUCCEEDED
            job.output_path = descriptor.output_path()
            self.sink.event(make_event("build_success", BuildPhase.SUCCEEDED, journalCode=journal))
        else:
            job.phase = BuildPhase.FAILED
            job.returncode = 7
            job.error = "Build failed with exit code 7"
            self.sink.event(make_event("build_failed", BuildPhase.FAILED, journalCode=journal))
        return job


def _factory(**kwargs):
    return lambda sink: FakeExecutor(sink, **kwargs)


def _article(journal="epijinfo", article_id="12"):
    return ResourceDescriptor.parse(journal, "article", article_id)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_starts_immediately(self):
        manager = BuildManager(executor_factory=_factory(), deploy_command="")
        result = manager.submit(_article())
        assert result.status_code == 202
        assert result.status is BuildStatus.PROCESSING
        assert manager.is_building("epijinfo")

        record = await manager.wait(result.record, timeout=5)
        assert record.status is BuildStatus.COMPLETED
        assert record.output_path == "dist/epijinfo/articles/12"
        assert record.output == ["building article 12"]
        assert record.progress() == 100
        assert not manager.is_building("epijinfo")

    @pytest.mark.asyncio
    async def test_second_request_same_journal_is_queued(self):
        gate = asyncio.Event()
        manager = BuildManager(executor_factory=_factory(gate=gate), deploy_command="")
        first = manager.submit(_article(article_id="1"))
        second = manager.submit(_article(article_id="2"))
        third = manager.submit(_article(article_id="3"))

        assert second.status_code == 203
        assert second.queue_position == 0
        assert third.queue_position == 1
        assert manager.queue_length("epijinfo") == 2

        gate.set()
        for r in (first, second, third):
            await manager.wait(r.record, timeout=5)
        assert third.record.status is BuildStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_queue_drains_in_fifo_order(self):
        gate = asyncio.Event()
        calls = []
        manager = BuildManager(executor_factory=_factory(gate=gate, calls=calls), deploy_command="")
        results = [manager.submit(_article(article_id=str(i))) for i in range(4)]
        gate.set()
        for r in results:
            await manager.wait(r.record, timeout=5)
        assert [c[2] for c in calls] == ["0", "1", "2", "3"]

    @pytest.mark.asyncio
    async def test_identical_queued_request_coalesced(self):
        gate = asyncio.Event()
        calls = []
        manager = BuildManager(executor_factory=_factory(gate=gate, calls=calls), deploy_command="")
        manager.submit(_article(article_id="1"))
        queued = manager.submit(_article(article_id="2"))
        again = manager.submit(_article(article_id="2"))

        assert again.coalesced is True
        assert again.record is queued.record
        assert manager.queue_length("epijinfo") == 1

        gate.set()
        await manager.wait(queued.record, timeout=5)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_queue_full_rejected(self):
        gate = asyncio.Event()
        manager = BuildManager(
            executor_factory=_factory(gate=gate), max_queue_per_journal=1, deploy_command="",
        )
        first = manager.submit(_article(article_id="1"))
        second = manager.submit(_article(article_id="2"))
        rejected = manager.submit(_article(article_id="3"))

        assert rejected.status_code == 503
        assert rejected.status is BuildStatus.REJECTED
        assert rejected.record.done.is_set()
        assert "Queue full" in rejected.record.error

        gate.set()
        await manager.wait(first.record, timeout=5)
        await manager.wait(second.record, timeout=5)

    @pytest.mark.asyncio
    async def test_journals_build_concurrently(self):
        gate = asyncio.Event()
        manager = BuildManager(executor_factory=_factory(gate=gate), deploy_command="")
        a = manager.submit(_article("epijinfo"))
        b = manager.submit(_article("dmtcs"))
        assert a.status_code == 202
        assert b.status_code == 202
        assert manager.status()["builds"]["active"] == 2

        gate.set()
        await asyncio.gather(manager.wait(a.record, 5), manager.wait(b.record, 5))

    @pytest.mark.asyncio
    async def test_global_concurrency_cap(self):
        gate = asyncio.Event()
        calls = []
        manager = BuildManager(
            executor_factory=_factory(gate=gate, calls=calls), max_concurrent=1, deploy_command="",
        )
        a = manager.submit(_article("epijinfo"))
        b = manager.submit(_article("dmtcs"))
        await asyncio.sleep(0.05)
        assert len(calls) == 1

        gate.set()
        await asyncio.gather(manager.wait(a.record, 5), manager.wait(b.record, 5))
        assert len(calls) == 2


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_failure(self):
        manager = BuildManager(executor_factory=_factory(exit_code=1), deploy_command="")
        record = await manager.run(_article())
        assert record.status is BuildStatus.FAILED
        assert record.phase == "failed"
        assert record.error == "Build failed with exit code 7"
        assert manager.stats["failedBuilds"] == 1

    @pytest.mark.asyncio
    async def test_api_error_exit_code(self):
        manager = BuildManager(executor_factory=_factory(exit_code=2), deploy_command="")
        record = await manager.run(_article())
        assert record.status is BuildStatus.FAILED
        assert record.phase == "api_error"
        assert record.error == "API error: Unable to fetch resource data"
        assert manager.stats["apiErrors"] == 1

    @pytest.mark.asyncio
    async def test_api_error_diagnostics_counted(self):
        manager = BuildManager(
            executor_factory=_factory(api_errors=["fetch failed"]), deploy_command="",
        )
        record = await manager.run(_article())
        assert record.status is BuildStatus.COMPLETED
        assert manager.stats["apiErrors"] == 1

    @pytest.mark.asyncio
    async def test_executor_crash_keeps_manager_alive(self):
        class Broken:
            async def run(self, *args):
                raise RuntimeError("boom")

        manager = BuildManager(executor_factory=lambda sink: Broken(), deploy_command="")
        record = await manager.run(_article())
        assert record.status is BuildStatus.FAILED
        assert "boom" in record.error
        assert not manager.is_building("epijinfo")

    @pytest.mark.asyncio
    async def test_shutdown_marks_running_build_failed(self):
        gate = asyncio.Event()
        manager = BuildManager(executor_factory=_factory(gate=gate), deploy_command="")
        result = manager.submit(_article())
        await asyncio.sleep(0.05)
        assert result.record.phase == "env_loading"

        await manager.shutdown()
        record = result.record
        assert record.status is BuildStatus.FAILED
        assert record.phase == "failed"
        assert record.error == "Build cancelled"
        assert record.to_dict()["progress"] == {"phase": "failed", "percentage": 0}
        assert record.done.is_set()

    @pytest.mark.asyncio
    async def test_logs_mirror_events(self):
        manager = BuildManager(executor_factory=_factory(), deploy_command="")
        record = await manager.run(_article())
        body = record.to_dict()
        assert body["status"] == "completed"
        assert body["progress"] == {"phase": "completed", "percentage": 100}
        assert any('"build_start"' in line for line in body["logs"])
        assert body["data"]["outputPath"] == "dist/epijinfo/articles/12"


class TestDeploy:
    @pytest.mark.asyncio
    async def test_deploy_success(self, tmp_path):
        marker = tmp_path / "deployed.txt"
        script = tmp_path / "deploy.py"
        script.write_text(
            "import sys\n"
            f"open({str(marker)!r}, 'w').write(sys.argv[1])\n"
            "print('uploaded')\n",
            encoding="utf-8",
        )
        command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
        manager = BuildManager(executor_factory=_factory(), deploy_command=command, cwd=tmp_path)

        record = await manager.run(_article(), deploy=True)
        assert record.deployed is True
        assert marker.read_text() == "dist/epijinfo/articles/12"
        assert "uploaded" in record.logs

    @pytest.mark.asyncio
    async def test_deploy_failure(self, tmp_path):
        command = f"{shlex.quote(sys.executable)} -c \"raise SystemExit(3)\""
        manager = BuildManager(executor_factory=_factory(), deploy_command=command, cwd=tmp_path)

        record = await manager.run(_article(), deploy=True)
        assert record.status is BuildStatus.COMPLETED
        assert record.deployed is False
        assert record.deploy_error == "Deployment failed with code 3"

    @pytest.mark.asyncio
    async def test_no_deploy_without_flag(self, tmp_path):
        command = f"{shlex.quote(sys.executable)} -c \"raise SystemExit(3)\""
        manager = BuildManager(executor_factory=_factory(), deploy_command=command, cwd=tmp_path)
        record = await manager.run(_article(), deploy=False)
        assert record.deployed is False
        assert record.deploy_error is None


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_history_capped(self):
        manager = BuildManager(executor_factory=_factory(), deploy_command="", history_size=3)
        records = []
        for i in range(5):
            records.append(await manager.run(_article(article_id=str(i))))
        assert manager.get(records[0].build_id) is None
        assert manager.get(records[-1].build_id) is records[-1]

    @pytest.mark.asyncio
    async def test_build_ids_unique(self):
        gate = asyncio.Event()
        manager = BuildManager(executor_factory=_factory(gate=gate), deploy_command="")
        a = manager.submit(_article())
        b = manager.submit(_article())
        assert a.record.build_id.startswith("epijinfo-article-12-")
        assert a.record.build_id != b.record.build_id

        gate.set()
        await asyncio.gather(manager.wait(a.record, 5), manager.wait(b.record, 5))

    @pytest.mark.asyncio
    async def test_status_counts(self):
        gate = asyncio.Event()
        manager = BuildManager(executor_factory=_factory(gate=gate), deploy_command="")
        a = manager.submit(_article(article_id="1"))
        b = manager.submit(_article(article_id="2"))

        status = manager.status()
        assert status["builds"]["active"] == 1
        assert status["builds"]["queued"] == 1
        assert status["byJournal"]["epijinfo"]["queued"] == 1
        assert status["queuedBuilds"][0]["queuePosition"] == 1

        gate.set()
        await asyncio.gather(manager.wait(a.record, 5), manager.wait(b.record, 5))

    def test_estimate_wait(self):
        assert estimate_wait(0) == "0s"
        assert estimate_wait(1) == "30s"
        assert estimate_wait(4) == "2m"
