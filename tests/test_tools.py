"""Tests for the tool operations."""

import asyncio

import pytest

from sandbash.config import SandboxConfig
from sandbash.tools import NETWORK_COMMANDS, SandboxTools, ToolResponse


def run(coro):
    return asyncio.run(coro)


class TestExecuteIsolated:
    """Tests for SandboxTools.execute_isolated."""

    def test_echo(self, tools):
        """Test the basic happy path."""
        response = run(tools.execute_isolated("echo hi", files={}))

        assert not response.is_error
        assert response.result.stdout == "hi\n"
        assert response.result.stderr == ""
        assert response.result.exit_code == 0

    def test_env_does_not_leak_between_calls(self, tools):
        """Test that a variable exported in one call is unseen by the next."""

        async def scenario():
            first = await tools.execute_isolated("export X=1")
            second = await tools.execute_isolated("echo $X")
            return first, second

        first, second = run(scenario())

        assert first.result.env["X"] == "1"
        assert second.result.stdout == "\n"
        assert "X" not in second.result.env

    def test_env_override(self, tools):
        response = run(tools.execute_isolated("echo $GREETING", env={"GREETING": "hey"}))

        assert response.result.stdout == "hey\n"

    def test_seed_files(self, tools):
        response = run(tools.execute_isolated("cat data.txt", files={"data.txt": "seeded"}))

        assert response.result.stdout == "seeded"

    def test_context_released_after_call(self, tools, engine):
        run(tools.execute_isolated("echo hi"))

        assert len(engine.released) == 1
        assert engine.released[0] is engine.created[0]

    def test_non_zero_exit_is_error_with_payload(self, tools):
        """Test that command failure is data, not an exception."""
        response = run(tools.execute_isolated("exit 3"))

        assert response.is_error
        assert response.result is not None
        assert response.result.exit_code == 3

    def test_engine_fault_becomes_text(self, tools, engine):
        response = run(tools.execute_isolated("boom"))

        assert response.is_error
        assert response.result is None
        assert response.text == "Execution error: engine exploded"
        assert engine.released

    def test_bad_root_is_configuration_error(self, engine, tmp_path):
        tools = SandboxTools(SandboxConfig(overlay_root=str(tmp_path / "nope")), engine)

        response = run(tools.execute_isolated("echo hi"))

        assert response.is_error
        assert response.text.startswith("Configuration error:")

    def test_malformed_files_is_configuration_error(self, tools):
        response = run(tools.execute_isolated("echo hi", files={"a": 1}))

        assert response.is_error
        assert "Configuration error" in response.text

    def test_output_truncated(self, engine, tmp_path):
        tools = SandboxTools(SandboxConfig(max_output_length=4), engine)

        response = run(tools.execute_isolated("printf '%s' abcdefgh"))

        assert response.result.stdout == "abcd\n... [4 characters truncated]"
        assert not response.is_error


class TestPersistentSession:
    """Tests for the persistent tools."""

    def test_env_does_not_persist(self, tools):
        """Test that exports vanish while the context stays alive."""

        async def scenario():
            await tools.execute_persistent("export X=1")
            return await tools.execute_persistent("echo $X")

        response = run(scenario())

        assert response.result.stdout == "\n"
        assert response.result.exit_code == 0

    def test_files_persist(self, tools):
        async def scenario():
            await tools.execute_persistent("printf '%s' kept > /tmp/k.txt")
            return await tools.execute_persistent("cat /tmp/k.txt")

        assert run(scenario()).result.stdout == "kept"

    def test_persistent_context_reused(self, tools, engine):
        async def scenario():
            await tools.execute_persistent("echo a")
            await tools.execute_persistent("echo b")

        run(scenario())

        assert len(engine.created) == 1

    def test_cwd_override(self, tools):
        async def scenario():
            await tools.write_file("/srv/x.txt", "in srv")
            return await tools.execute_persistent("cat x.txt", cwd="/srv")

        assert run(scenario()).result.stdout == "in srv"

    def test_engine_fault_keeps_session(self, tools, engine):
        """Test that an engine error does not invalidate the persistent slot."""

        async def scenario():
            await tools.write_file("/tmp/a.txt", "x")
            failed = await tools.execute_persistent("boom")
            after = await tools.read_file("/tmp/a.txt")
            return failed, after

        failed, after = run(scenario())

        assert failed.is_error
        assert failed.text == "Execution error: engine exploded"
        assert after.text == "x"
        assert len(engine.created) == 1

    def test_failed_construction_retried(self, engine, tmp_path):
        root = tmp_path / "later"
        tools = SandboxTools(SandboxConfig(read_write_root=str(root)), engine)

        async def scenario():
            first = await tools.execute_persistent("echo hi")
            root.mkdir()
            second = await tools.execute_persistent("echo hi")
            return first, second

        first, second = run(scenario())

        assert first.is_error
        assert "Configuration error" in first.text
        assert second.result.stdout == "hi\n"


class TestFileTools:
    """Tests for write_file, read_file, list_files and reset."""

    def test_write_then_read(self, tools):
        async def scenario():
            written = await tools.write_file("/tmp/a.txt", "line 1\n'quoted' $HOME")
            read = await tools.read_file("/tmp/a.txt")
            return written, read

        written, read = run(scenario())

        assert not written.is_error
        assert written.text == "Successfully wrote 21 bytes to /tmp/a.txt"
        assert read.text == "line 1\n'quoted' $HOME"

    def test_write_content_sent_on_stdin(self, tools, engine):
        """Test that content never becomes part of the command line."""
        content = "x" * 200_000

        async def scenario():
            written = await tools.write_file("/tmp/big.txt", content)
            read = await tools.read_file("/tmp/big.txt")
            return written, read

        written, read = run(scenario())

        assert not written.is_error
        assert engine.commands[0] == "cat > /tmp/big.txt"
        assert engine.stdin[0] == content
        assert read.result is None
        assert read.text.startswith("x" * 100)

    def test_write_failure(self, tools):
        response = run(tools.write_file("/readonly/a.txt", "x"))

        assert response.is_error
        assert response.text.startswith("Failed to write file:")

    def test_read_missing(self, tools):
        response = run(tools.read_file("/nope.txt"))

        assert response.is_error
        assert "No such file" in response.text

    def test_reset_discards_files(self, tools):
        """Test that files written before a reset are gone afterwards."""

        async def scenario():
            await tools.write_file("/tmp/a.txt", "x")
            reset = await tools.reset_persistent()
            read = await tools.read_file("/tmp/a.txt")
            return reset, read

        reset, read = run(scenario())

        assert not reset.is_error
        assert reset.text == "Persistent bash environment has been reset."
        assert read.is_error

    def test_reset_without_session(self, tools, engine):
        response = run(tools.reset_persistent())

        assert not response.is_error
        assert engine.created == []

    def test_list_files(self, tools):
        async def scenario():
            await tools.write_file("/home/user/a.txt", "a")
            await tools.write_file("/home/user/.secret", "s")
            plain = await tools.list_files()
            hidden = await tools.list_files(show_hidden=True)
            return plain, hidden

        plain, hidden = run(scenario())

        assert "a.txt" in plain.text
        assert ".secret" not in plain.text
        assert ".secret" in hidden.text

    def test_list_files_recursive(self, tools, engine):
        async def scenario():
            await tools.write_file("/home/user/sub/b.txt", "b")
            await tools.write_file("/home/user/.hidden/c.txt", "c")
            return await tools.list_files(".", recursive=True)

        response = run(scenario())

        assert response.text == "./sub/b.txt\n"
        assert engine.commands[-1] == "find . -type f -not -path '*/.*'"

    def test_list_empty_directory(self, tools):
        response = run(tools.list_files("/empty"))

        assert response.text == "(empty directory)"
        assert not response.is_error

    def test_paths_are_quoted(self, tools, engine):
        run(tools.read_file("a file; rm -rf /"))

        assert engine.commands[-1] == "cat -- 'a file; rm -rf /'"


class TestDescribeEnvironment:
    """Tests for describe_environment."""

    def test_network_disabled(self, tools):
        """Test that no network commands are advertised while offline."""
        info = tools.describe_environment().data

        assert info["network_enabled"] is False
        assert info["network_commands"] == []
        assert info["allowed_methods"] is None
        assert info["network"] == {"mode": "disabled"}

    def test_network_enabled(self, engine):
        config = SandboxConfig(allow_network=True, allowed_url_prefixes=("https://a/",))
        info = SandboxTools(config, engine).describe_environment().data

        assert info["network_enabled"] is True
        assert info["network_commands"] == NETWORK_COMMANDS
        assert info["allowed_url_prefixes"] == ["https://a/"]
        assert info["network"]["mode"] == "allow_list"

    def test_limits_and_engine(self, tools):
        info = tools.describe_environment().data

        assert info["engine"] == {"name": "fake"}
        assert info["execution_limits"]["max_jq_iterations"] == 10000
        assert info["filesystem"] == {"type": "memory"}
        assert info["persistent_session_active"] is False

    def test_does_not_create_context(self, tools, engine):
        tools.describe_environment()

        assert engine.created == []


class TestToolResponse:
    """Tests for the payload shape."""

    def test_error_payload(self):
        payload = ToolResponse(text="Execution error: x", is_error=True).to_dict()

        assert payload == {"is_error": True, "text": "Execution error: x"}

    @pytest.mark.parametrize("exit_code, is_error", [(0, False), (1, True)])
    def test_execution_payload(self, tools, exit_code, is_error):
        payload = run(tools.execute_isolated(f"exit {exit_code}")).to_dict()

        assert payload["is_error"] is is_error
        assert payload["result"]["exit_code"] == exit_code
