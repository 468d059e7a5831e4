import pytest
import pytest_asyncio

from deckhand.actions import ActionRequest, ActionState
from deckhand.config import ShellToolConfig
from deckhand.exceptions import ActionExecutionError
from deckhand.execution import ActionContext, ExecutionEngine
from deckhand.processes import BackgroundProcessSupervisor
from deckhand.tools.registry import ActionRegistry
from deckhand.tools.shell import CommandLineTool, extract_shell_base_commands, is_blocked_shell_command


@pytest_asyncio.fixture
async def context(tmp_path):
    supervisor = BackgroundProcessSupervisor(stop_grace_period=2.0)
    yield ActionContext(call_id="test", working_dir=str(tmp_path), _supervisor=supervisor)
    await supervisor.aclose()


def test_extract_shell_base_commands_skips_wrappers_and_assignments():
    assert extract_shell_base_commands("FOO=1 sudo ls -la | grep x && echo y") == ["ls", "grep", "echo"]
    assert extract_shell_base_commands("") == []


def test_blocked_patterns_match_segments_and_executables():
    assert is_blocked_shell_command("echo hi; rm -rf /", ["rm -rf /"]) == (True, "rm -rf /")
    assert is_blocked_shell_command("mkfs.ext4 /dev/sda", ["mkfs"]) == (True, "mkfs")
    assert is_blocked_shell_command("echo mkfs", ["mkfs"]) == (False, "")
    assert is_blocked_shell_command("   ", ["mkfs"]) == (True, "empty_command")


@pytest.mark.asyncio
async def test_execute_returns_output_of_quick_command(context):
    tool = CommandLineTool(background_wait=5)

    result = await tool.execute("echo hello", context=context)

    assert result == "COMMAND: echo hello\n\nSTDOUT:\nhello\n\nEXIT CODE: 0"


@pytest.mark.asyncio
async def test_execute_reports_stderr_and_exit_code(context):
    tool = CommandLineTool(background_wait=5)

    result = await tool.execute("echo oops 1>&2; exit 2", context=context)

    assert "STDERR:\noops" in result
    assert "STDOUT" not in result
    assert result.endswith("EXIT CODE: 2")


@pytest.mark.asyncio
async def test_execute_merges_environment_and_uses_cwd(context, tmp_path):
    (tmp_path / "marker.txt").write_text("x", encoding="utf-8")
    tool = CommandLineTool(background_wait=5)

    result = await tool.execute("echo $DECKHAND_TEST_VAR; ls", cwd=str(tmp_path), env={"DECKHAND_TEST_VAR": "bar"}, context=context)

    assert "bar" in result
    assert "marker.txt" in result


@pytest.mark.asyncio
async def test_long_command_keeps_running_in_background(context):
    tool = CommandLineTool(background_wait=0.2)

    result = await tool.execute("sleep 30", context=context)

    assert "STATUS: The process may still be executing" in result
    process_id = result.split("PROCESS ID: ", 1)[1].split("\n", 1)[0]
    assert process_id in await tool.list(context=context)

    stopped = await tool.stop(process_id, context=context)
    assert stopped.startswith("Background process stopped")
    assert await tool.list(context=context) == "No background processes are running."


@pytest.mark.asyncio
async def test_cleanup_through_tool(context):
    tool = CommandLineTool(background_wait=0.1)
    await tool.execute("sleep 30", context=context)

    report = await tool.cleanup(context=context)

    assert report.startswith("Cleaned up 1 background process(es):")


@pytest.mark.asyncio
async def test_missing_working_directory_is_reported(context, tmp_path):
    tool = CommandLineTool()
    missing = tmp_path / "nope"

    result = await tool.execute("echo hi", cwd=str(missing), context=context)

    assert result == f"Working directory does not exist: {missing}"


@pytest.mark.asyncio
async def test_blocked_command_raises(context):
    tool = CommandLineTool()

    with pytest.raises(ActionExecutionError, match="Command blocked"):
        await tool.execute("rm -rf /", context=context)


@pytest.mark.asyncio
async def test_allow_list_restricts_commands(context):
    tool = CommandLineTool(shell_config=ShellToolConfig(allowed_commands=["echo"]))

    with pytest.raises(ActionExecutionError, match="Command not in allowed list: ls"):
        await tool.execute("echo ok && ls", context=context)


@pytest.mark.asyncio
async def test_execute_requires_context():
    with pytest.raises(ActionExecutionError):
        await CommandLineTool().execute("echo hi")


@pytest.mark.asyncio
async def test_toolkit_runs_through_engine(tmp_path):
    registry = ActionRegistry()
    registry.register_toolkit(CommandLineTool(background_wait=5))
    engine = ExecutionEngine(registry, working_dir=tmp_path)
    try:
        execute, listing = await engine.run(
            [
                ActionRequest(name="CommandLineTool.execute", arguments={"command": "echo via engine"}),
                ActionRequest(name="CommandLineTool.list"),
            ],
            timeout=10,
        )
    finally:
        await engine.aclose()

    assert execute.state is ActionState.SUCCESS
    assert "STDOUT:\nvia engine" in execute.text
    assert listing.state is ActionState.SUCCESS
