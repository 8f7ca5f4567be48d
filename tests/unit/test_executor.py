# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.
"""Unit tests for the rebuild executor (real subprocess, fake build)."""

import io
import json
import os
import shlex
import sys

import pytest

from epiplane.rebuild.events import BuildPhase, CollectingSink, StreamSink, make_event
from epiplane.rebuild.executor import RebuildExecutor

FAKE_BUILD = """\
import json, os, sys
keys = ["NEXT_PUBLIC_JOURNAL_CODE", "NEXT_PUBLIC_JOURNAL_RVCODE", "JOURNAL_NAME",
        "ONLY_BUILD_ARTICLE_ID", "ONLY_BUILD_VOLUME_ID", "ONLY_BUILD_SECTION_ID",
        "ONLY_BUILD_STATIC_PAGE"]
print("ENV " + json.dumps({k: os.environ.get(k) for k in keys}), flush=True)
if os.environ.get("FAKE_BUILD_CONNECTIVITY"):
    print("Error: fetch failed (ECONNREFUSED 127.0.0.1:8080)", flush=True)
if os.environ.get("FAKE_BUILD_SUMMARY"):
    with open(os.environ["REBUILD_SUMMARY_FILE"], "w") as fh:
        json.dump({"apiErrors": [{"url": "/papers/12", "status": 500}]}, fh)
print("compiling pages", file=sys.stderr, flush=True)
sys.exit(int(os.environ.get("FAKE_BUILD_EXIT", "0")))
"""


@pytest.fixture
def build_command(tmp_path):
    script = tmp_path / "fake_build.py"
    script.write_text(FAKE_BUILD, encoding="utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


def _executor(assets_dir, build_command, tmp_path, sink, **env):
    base = {k: v for k, v in os.environ.items() if not k.startswith(("ONLY_BUILD_", "FAKE_BUILD_"))}
    base.update(env)
    return RebuildExecutor(
        assets_dir=assets_dir,
        build_command=build_command,
        cwd=tmp_path,
        sink=sink,
        base_env=base,
    )


def _env_line(sink: CollectingSink) -> dict:
    line = next(l for l in sink.stdout_lines if l.startswith("ENV "))
    return json.loads(line[4:])


class TestValidation:
    @pytest.mark.asyncio
    async def test_missing_id_exits_3(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        job = await _executor(assets_dir, build_command, tmp_path, sink).run("epijinfo", "article")
        assert job.exit_code == 3
        assert job.spawned is False
        assert sink.types() == ["error"]
        assert sink.events[0]["phase"] == "validating"
        assert "Resource ID is required" in sink.stderr

    @pytest.mark.asyncio
    async def test_static_page_without_page(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        job = await _executor(assets_dir, build_command, tmp_path, sink).run("epijinfo", "static-page")
        assert job.exit_code == 3
        assert job.phase is BuildPhase.FAILED

    @pytest.mark.asyncio
    async def test_missing_env_file(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        job = await _executor(assets_dir, build_command, tmp_path, sink).run("unknown", "full")
        assert job.exit_code == 3
        assert "Journal environment file not found" in sink.events[0]["message"]
        assert job.spawned is False

    @pytest.mark.asyncio
    async def test_malformed_env_file(self, assets_dir, build_command, tmp_path):
        (assets_dir / ".env.local.broken").write_text("GOOD=1\nthis is not valid\n", encoding="utf-8")
        sink = CollectingSink()
        job = await _executor(assets_dir, build_command, tmp_path, sink).run("broken", "full")
        assert job.exit_code == 3
        assert sink.types() == ["build_start", "error"]
        assert sink.events[1]["phase"] == "env_loading"
        assert sink.events[1]["message"].startswith("Failed to load environment file")


class TestExecution:
    @pytest.mark.asyncio
    async def test_article_success(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        job = await _executor(assets_dir, build_command, tmp_path, sink).run("epijinfo", "article", "12")

        assert job.exit_code == 0
        assert job.succeeded
        assert sink.types() == ["build_start", "env_loaded", "build_executing", "build_success"]
        assert [e["phase"] for e in sink.events] == ["env_loading", "configuring", "executing", "succeeded"]
        success = sink.first("build_success")
        assert success["outputPath"] == "dist/epijinfo/articles/12"
        assert success["duration"].endswith("s")
        executing = sink.first("build_executing")
        assert executing["config"]["targetedBuild"] is True
        assert executing["config"]["pageName"] == "N/A"

        env = _env_line(sink)
        assert env["ONLY_BUILD_ARTICLE_ID"] == "12"
        assert env["ONLY_BUILD_VOLUME_ID"] is None
        assert env["JOURNAL_NAME"] == "epijinfo-site"
        assert "compiling pages" in sink.stderr_lines

    @pytest.mark.asyncio
    async def test_full_build_has_no_scope_even_if_inherited(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        executor = _executor(assets_dir, build_command, tmp_path, sink, ONLY_BUILD_ARTICLE_ID="99")
        job = await executor.run("epijinfo", "full")

        assert job.exit_code == 0
        env = _env_line(sink)
        assert all(env[k] is None for k in env if k.startswith("ONLY_BUILD_"))
        assert sink.first("build_executing")["config"]["targetedBuild"] is False

    @pytest.mark.asyncio
    async def test_identity_keys_override_journal_file(self, assets_dir, build_command, tmp_path):
        (assets_dir / ".env.local.dmtcs").write_text(
            "NEXT_PUBLIC_JOURNAL_CODE=wrong\nNEXT_PUBLIC_JOURNAL_RVCODE=wrong\n", encoding="utf-8",
        )
        sink = CollectingSink()
        await _executor(assets_dir, build_command, tmp_path, sink).run("dmtcs", "volume", "3")
        env = _env_line(sink)
        assert env["NEXT_PUBLIC_JOURNAL_CODE"] == "dmtcs"
        assert env["NEXT_PUBLIC_JOURNAL_RVCODE"] == "dmtcs"
        assert env["ONLY_BUILD_VOLUME_ID"] == "3"

    @pytest.mark.asyncio
    async def test_build_failure_exits_1(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        executor = _executor(assets_dir, build_command, tmp_path, sink, FAKE_BUILD_EXIT="4")
        job = await executor.run("epijinfo", "static-page", page_name="about")

        assert job.exit_code == 1
        assert job.returncode == 4
        failed = sink.first("build_failed")
        assert failed["exitCode"] == 4
        assert failed["phase"] == "failed"
        assert job.output_path is None

    @pytest.mark.asyncio
    async def test_connectivity_line_is_diagnostic_only(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        executor = _executor(assets_dir, build_command, tmp_path, sink, FAKE_BUILD_CONNECTIVITY="1")
        job = await executor.run("epijinfo", "article", "12")

        assert job.exit_code == 0
        api_error = sink.first("api_error")
        assert api_error["source"] == "output"
        assert "ECONNREFUSED" in api_error["details"]
        assert len(job.api_errors) == 1

    @pytest.mark.asyncio
    async def test_summary_file_api_errors(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        executor = _executor(assets_dir, build_command, tmp_path, sink, FAKE_BUILD_SUMMARY="1")
        job = await executor.run("epijinfo", "article", "12")

        assert job.exit_code == 0
        api_error = sink.first("api_error")
        assert api_error["source"] == "summary"
        assert json.loads(api_error["details"]) == {"url": "/papers/12", "status": 500}

    @pytest.mark.asyncio
    async def test_spawn_failure_is_process_error(self, assets_dir, build_command, tmp_path):
        sink = CollectingSink()
        executor = RebuildExecutor(
            assets_dir=assets_dir, build_command=build_command,
            cwd=tmp_path / "does-not-exist", sink=sink,
        )
        job = await executor.run("epijinfo", "full")

        assert job.exit_code == 1
        assert job.spawned is False
        assert sink.types()[-1] == "process_error"


class TestComposeEnv:
    def test_layering(self, assets_dir):
        from epiplane.rebuild.resource import ResourceDescriptor

        executor = RebuildExecutor(
            assets_dir=assets_dir, build_command="true",
            base_env={"PATH": "/bin", "JOURNAL_NAME": "base", "ONLY_BUILD_SECTION_ID": "1"},
        )
        d = ResourceDescriptor.parse("epijinfo", "article", "12")
        env = executor.compose_env(d, {"JOURNAL_NAME": "tenant"})
        assert env["PATH"] == "/bin"
        assert env["JOURNAL_NAME"] == "tenant"
        assert env["NEXT_PUBLIC_JOURNAL_CODE"] == "epijinfo"
        assert "ONLY_BUILD_SECTION_ID" not in env
        assert env["ONLY_BUILD_ARTICLE_ID"] == "12"


class TestStreamSink:
    def test_error_events_go_to_stderr(self):
        out, err = io.StringIO(), io.StringIO()
        sink = StreamSink(stdout=out, stderr=err)
        sink.event(make_event("build_start", BuildPhase.ENV_LOADING, journalCode="epijinfo"))
        sink.event(make_event("build_failed", BuildPhase.FAILED, exitCode=1))
        sink.output("stderr", "warn")
        sink.output("stdout", "page built")

        out_lines = out.getvalue().splitlines()
        err_lines = err.getvalue().splitlines()
        assert json.loads(out_lines[0])["type"] == "build_start"
        assert out_lines[1] == "page built"
        assert json.loads(err_lines[0])["type"] == "build_failed"
        assert err_lines[1] == "warn"

    def test_event_has_timestamp(self):
        event = make_event("env_loaded", BuildPhase.CONFIGURING)
        assert event["phase"] == "configuring"
        assert event["timestamp"].endswith("Z")
