import asyncio

import pytest

from deckhand.processes import BackgroundProcessSupervisor, ProcessStatus


async def _spawn(command: str) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        start_new_session=True,
    )


@pytest.mark.asyncio
async def test_monitor_records_exit_code_and_removes_process():
    supervisor = BackgroundProcessSupervisor()
    process = await _spawn("exit 3")

    process_id = supervisor.register(process, "exit 3", "/tmp")
    await process.wait()
    await asyncio.sleep(0.05)

    handle = supervisor.get(process_id)
    assert handle is not None
    assert handle.exit_code == 3
    assert not handle.is_running
    assert supervisor.list() == (ProcessStatus.IDLE, "No background processes are running.")


@pytest.mark.asyncio
async def test_list_reports_running_processes():
    supervisor = BackgroundProcessSupervisor()
    process = await _spawn("sleep 30")
    process_id = supervisor.register(process, "sleep 30", "/tmp")
    try:
        status, text = supervisor.list()

        assert status is ProcessStatus.RUNNING
        assert text.startswith("1 background process(es) running:")
        assert process_id in text
        assert supervisor.summary() == text
    finally:
        await supervisor.aclose()


@pytest.mark.asyncio
async def test_stop_terminates_gracefully():
    supervisor = BackgroundProcessSupervisor(stop_grace_period=2.0)
    process = await _spawn("sleep 30")
    process_id = supervisor.register(process, "sleep 30", "/tmp")

    report = await supervisor.stop(process_id)

    assert report.startswith("Background process stopped")
    assert f"Process ID: {process_id}" in report
    assert "Escalated" not in report
    assert process.returncode is not None
    assert not supervisor.has_active()


@pytest.mark.asyncio
async def test_stop_escalates_to_kill_when_terminate_is_ignored():
    supervisor = BackgroundProcessSupervisor(stop_grace_period=0.3)
    process = await _spawn("trap '' TERM; while true; do sleep 0.05; done")
    await asyncio.sleep(0.2)
    process_id = supervisor.register(process, "stubborn", "/tmp")

    report = await supervisor.stop(process_id)

    assert "Escalated to SIGKILL: no exit within 0.3s of SIGTERM" in report
    assert process.returncode is not None
    assert not supervisor.has_active()


@pytest.mark.asyncio
async def test_force_stop_kills_immediately():
    supervisor = BackgroundProcessSupervisor(stop_grace_period=30.0)
    process = await _spawn("trap '' TERM; while true; do sleep 0.05; done")
    await asyncio.sleep(0.2)
    process_id = supervisor.register(process, "stubborn", "/tmp")

    report = await asyncio.wait_for(supervisor.stop(process_id, force=True), timeout=5)

    assert "Background process stopped" in report
    assert "Escalated" not in report
    assert process.returncode is not None


@pytest.mark.asyncio
async def test_stop_unknown_and_finished_processes():
    supervisor = BackgroundProcessSupervisor()
    process = await _spawn("true")
    process_id = supervisor.register(process, "true", "/tmp")
    await process.wait()
    await asyncio.sleep(0.05)

    assert await supervisor.stop("nope") == "Process not found: nope"
    assert (await supervisor.stop(process_id)).startswith("Process already finished (exit code: 0)")


@pytest.mark.asyncio
async def test_cleanup_stops_everything_and_reports_each_process():
    supervisor = BackgroundProcessSupervisor(stop_grace_period=2.0)
    for _ in range(2):
        process = await _spawn("sleep 30")
        supervisor.register(process, "sleep 30", "/tmp")

    report = await supervisor.cleanup()

    assert report.startswith("Cleaned up 2 background process(es):")
    assert report.count("Background process stopped") == 2
    assert "\n---\n" in report
    assert not supervisor.has_active()
    assert await supervisor.cleanup() == "No background processes to clean up."


class _BrokenProcess:
    pid = None
    returncode = None

    def __init__(self):
        self._done = asyncio.Event()

    async def wait(self):
        await self._done.wait()
        return 0

    def send_signal(self, sig):
        raise PermissionError("not permitted")


@pytest.mark.asyncio
async def test_cleanup_never_raises_on_individual_failures():
    supervisor = BackgroundProcessSupervisor()
    broken = _BrokenProcess()
    process_id = supervisor.register(broken, "broken", "/tmp")

    report = await supervisor.cleanup()

    assert f"Failed to clean up process {process_id}: not permitted" in report
    broken._done.set()
    await asyncio.sleep(0)
    await supervisor.aclose()
