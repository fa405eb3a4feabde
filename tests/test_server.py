"""Tests for the agent-facing tool server."""

import io
import json
import sys

import pytest
from envshield.config import EnvshieldConfig, RateLimitConfig
from envshield.secrets import EnvshieldError
from envshield.server import create_server, handle_request, serve_stdio


@pytest.fixture
def server(project):
    return create_server(project)


class TestTools:
    """Tests for list_secrets and check_secret_exists."""

    def test_list_secrets_names_only(self, server):
        """Names come back in load order, never values."""
        result = server.call_tool("list_secrets", {})

        assert result == {"secrets": ["API_KEY", "DB_PASS", "SHARED", "LOCAL_ONLY"]}
        assert "supersecret" not in json.dumps(result)

    def test_check_secret_exists(self, server):
        """Provenance shows every defining file and the active one."""
        result = server.call_tool("check_secret_exists", {"name": "SHARED"})

        assert result == {"exists": True, "sources": [".env", ".env.local"], "activeSource": ".env.local"}

    def test_check_missing_secret(self, server):
        """Unknown names report absence."""
        result = server.call_tool("check_secret_exists", {"name": "NOPE"})

        assert result == {"exists": False, "sources": [], "activeSource": None}

    def test_unknown_tool(self, server):
        with pytest.raises(EnvshieldError, match="Unknown tool: bogus"):
            server.call_tool("bogus", {})

    def test_tool_list(self, server):
        names = [tool["name"] for tool in server.get_tools()]

        assert names == ["list_secrets", "check_secret_exists", "run_with_secrets"]


class TestRunWithSecrets:
    """Tests for the wrapper around CommandExecutor."""

    def test_runs_with_named_secrets(self, server):
        """Requested secrets are injected and scrubbed by name."""
        result = server.call_tool(
            "run_with_secrets", {"command": "echo $DB_PASS", "secrets": ["DB_PASS"]}
        )

        assert result == {"exitCode": 0, "stdout": "[REDACTED:DB_PASS]\n", "stderr": "", "redactedCount": 1}

    def test_unrequested_secrets_not_injected(self, server):
        """Only the named secrets reach the child environment."""
        result = server.call_tool(
            "run_with_secrets", {"command": 'echo "[$DB_PASS]"', "secrets": ["LOCAL_ONLY"]}
        )

        assert result["stdout"] == "[]\n"

    def test_missing_secrets_rejected_whole(self, server, tmp_path):
        """Any unknown name rejects the request before anything runs."""
        marker = tmp_path / "ran"
        result = server.call_tool(
            "run_with_secrets",
            {"command": f"touch {marker}", "secrets": ["API_KEY", "NOPE", "ALSO_NOPE"]},
        )

        assert result == {
            "exitCode": 1,
            "stdout": "",
            "stderr": "Secrets not found: NOPE, ALSO_NOPE",
            "redactedCount": 0,
        }
        assert not marker.exists()

    def test_timeout_and_working_dir(self, server, tmp_path):
        """timeout and workingDir are passed through."""
        result = server.call_tool(
            "run_with_secrets",
            {"command": "pwd -P", "secrets": [], "timeout": 5000, "workingDir": str(tmp_path)},
        )
        assert result["stdout"].strip() == str(tmp_path.resolve())

        result = server.call_tool(
            "run_with_secrets", {"command": "sleep 5", "secrets": [], "timeout": 100}
        )
        assert result["stderr"] == "Command timeout exceeded"

    def test_blocked_command(self, server):
        result = server.call_tool("run_with_secrets", {"command": "sudo ls", "secrets": []})

        assert result["exitCode"] == 1
        assert 'Command blocked: contains "sudo"' == result["stderr"]

    def test_rate_limit(self, project, tmp_path):
        """A denied call does not run and reports the wait in seconds."""
        limited = create_server(
            project, EnvshieldConfig(rate_limit=RateLimitConfig(enabled=True, max_requests=1, window_ms=60000))
        )
        marker = tmp_path / "second"

        first = limited.call_tool("run_with_secrets", {"command": "true", "secrets": []})
        second = limited.call_tool(
            "run_with_secrets", {"command": f"touch {marker}", "secrets": ["NOPE"]}
        )

        assert first["exitCode"] == 0
        assert second["exitCode"] == 1
        assert second["stderr"].startswith("Rate limit exceeded.")
        assert "Please wait 60 seconds" in second["stderr"]
        assert not marker.exists()

    @pytest.mark.parametrize(
        "arguments, message",
        [
            ({"command": "true", "secrets": "API_KEY"}, "secrets must be a list"),
            ({"command": "true", "secrets": [1, 2]}, "secrets must be a list"),
            ({"command": ["echo", "hi"], "secrets": []}, "command must be a string"),
            ({"command": "true", "secrets": [], "timeout": "5000"}, "timeout must be"),
            ({"command": "true", "secrets": [], "timeout": True}, "timeout must be"),
            ({"command": "true", "secrets": [], "timeout": -1}, "timeout must be"),
            ({"command": "true", "secrets": [], "workingDir": 7}, "workingDir must be a string"),
        ],
    )
    def test_malformed_arguments_rejected(self, server, arguments, message):
        """Wrong argument types come back as a failed result, not an exception."""
        result = server.call_tool("run_with_secrets", arguments)

        assert result["exitCode"] == 1
        assert result["stdout"] == ""
        assert message in result["stderr"]
        assert result["redactedCount"] == 0

    def test_rate_limit_disabled_by_default(self, server):
        assert server.rate_limiter is None


class TestStdio:
    """Tests for the line-delimited JSON transport."""

    def _serve(self, server, *requests):
        lines = [r if isinstance(r, str) else json.dumps(r) for r in requests]
        output = io.StringIO()
        serve_stdio(server, io.StringIO("\n".join(lines) + "\n"), output)
        return [json.loads(line) for line in output.getvalue().splitlines()]

    def test_tools_list_and_call(self, server):
        responses = self._serve(
            server,
            {"id": 1, "method": "tools/list"},
            {"id": 2, "method": "tools/call", "params": {"name": "list_secrets"}},
        )

        assert responses[0]["id"] == 1
        assert len(responses[0]["result"]["tools"]) == 3
        assert responses[1] == {
            "id": 2,
            "result": {"secrets": ["API_KEY", "DB_PASS", "SHARED", "LOCAL_ONLY"]},
        }

    def test_bad_input(self, server):
        responses = self._serve(server, "not json", "[1, 2]", {"id": 3, "method": "resources/list"})

        assert [r["error"]["code"] for r in responses] == ["INVALID_JSON", "INVALID_REQUEST", "UNKNOWN_METHOD"]

    def test_invalid_params(self, server):
        response = handle_request(server, {"id": 4, "method": "tools/call", "params": {"name": 5}})

        assert response["error"]["code"] == "INVALID_REQUEST"

    def test_tool_errors_are_scrubbed(self, server):
        """Error messages never echo secret values back to the agent."""
        response = handle_request(
            server, {"id": 5, "method": "tools/call", "params": {"name": "supersecret"}}
        )

        assert response["error"] == {"code": "TOOL_ERROR", "message": "Unknown tool: [REDACTED:DB_PASS]"}

    def test_bad_arguments_are_tool_errors(self, server):
        response = handle_request(
            server,
            {"id": 6, "method": "tools/call", "params": {"name": "check_secret_exists", "arguments": {}}},
        )

        assert response["error"]["code"] == "TOOL_ERROR"

    def test_default_streams_resolved_at_call_time(self, server, monkeypatch):
        """Replacing sys.stdin and sys.stdout after import is honoured."""
        output = io.StringIO()
        monkeypatch.setattr(sys, "stdin", io.StringIO(json.dumps({"id": 9, "method": "tools/list"}) + "\n"))
        monkeypatch.setattr(sys, "stdout", output)

        serve_stdio(server)

        assert json.loads(output.getvalue())["id"] == 9

    def test_blank_lines_skipped(self, server):
        assert self._serve(server, "", "   ") == []
