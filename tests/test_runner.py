"""Tests for bounded command execution."""

import asyncio

import pytest

from hostplane.runner import ProcessRunner


@pytest.mark.asyncio
async def test_success_captures_output(tmp_path):
    runner = ProcessRunner(use_sudo=False)
    result = await runner.run("echo $GREETING && pwd", cwd=str(tmp_path), env={"GREETING": "hello"})
    assert result.success
    assert result.exit_code == 0
    assert result.output.splitlines() == ["hello", str(tmp_path)]


@pytest.mark.asyncio
async def test_non_zero_exit_is_a_result():
    result = await ProcessRunner(use_sudo=False).run("echo oops >&2; exit 4")
    assert not result.success
    assert result.exit_code == 4
    assert result.stderr.strip() == "oops"
    assert not result.timed_out


@pytest.mark.asyncio
async def test_timeout_kills_the_child():
    result = await ProcessRunner(use_sudo=False).run("sleep 10", timeout=0.2)
    assert not result.success
    assert result.timed_out
    assert result.duration_ms < 5000


@pytest.mark.asyncio
async def test_timeout_kills_grandchildren(tmp_path):
    marker = tmp_path / "finished"
    result = await ProcessRunner(use_sudo=False).run(
        f"(sleep 1; touch {marker}) & sleep 10", cwd=str(tmp_path), timeout=0.3
    )
    assert result.timed_out
    await asyncio.sleep(1.5)
    assert not marker.exists()


@pytest.mark.asyncio
async def test_missing_working_directory_is_a_failed_result(tmp_path):
    result = await ProcessRunner(use_sudo=False).run("true", cwd=str(tmp_path / "missing"))
    assert not result.success
    assert "Failed to start command" in result.error


@pytest.mark.asyncio
async def test_output_is_capped():
    runner = ProcessRunner(use_sudo=False, max_output_bytes=16)
    result = await runner.run("printf 'a%.0s' $(seq 1 100)")
    assert len(result.output) == 16


def test_argv_with_user_and_sudo():
    runner = ProcessRunner(use_sudo=True)
    assert runner.build_argv("npm install", "site_demo", shell=True) == [
        "sudo", "-u", "site_demo", "bash", "-c", "npm install",
    ]
    assert ProcessRunner(use_sudo=False).build_argv(["id", "x"], "site_demo", shell=False) == ["id", "x"]
