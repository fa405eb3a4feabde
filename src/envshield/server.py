"""Agent-facing tool server: list/check secrets and run commands with them."""

import json
import logging
import math
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, IO, List, Optional

from .config import EnvshieldConfig, load_config
from .executor import DEFAULT_TIMEOUT_MS, CommandExecutor, ExecutionRequest
from .ratelimit import RateLimiter
from .scrubber import Scrubber
from .secrets import EnvshieldError, SecretStore, load_secrets

logger = logging.getLogger(__name__)

TOOLS: List[Dict[str, object]] = [
    {
        "name": "list_secrets",
        "description": (
            "List all available secret names (never returns values). "
            "Use this to discover what secrets are available."
        ),
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "check_secret_exists",
        "description": "Check if a specific secret exists and which files define it.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "The secret name to check"},
            },
            "required": ["name"],
        },
    },
    {
        "name": "run_with_secrets",
        "description": (
            "Execute a shell command with secrets injected as environment variables. "
            "The command output will have secret values scrubbed. Use standard env var "
            "syntax like $SECRET_NAME in your command."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "secrets": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "List of secret names to inject as env vars",
                },
                "timeout": {
                    "type": "number",
                    "description": f"Timeout in milliseconds (default: {DEFAULT_TIMEOUT_MS})",
                },
                "workingDir": {
                    "type": "string",
                    "description": "Working directory for the command",
                },
            },
            "required": ["command", "secrets"],
        },
    },
]


@dataclass
class EnvshieldServer:
    """Session state shared by every tool call."""

    config: EnvshieldConfig
    secrets: SecretStore
    scrubber: Scrubber
    executor: CommandExecutor
    rate_limiter: Optional[RateLimiter] = None

    def get_tools(self) -> List[Dict[str, object]]:
        return TOOLS

    def call_tool(self, name: str, args: Dict[str, object]) -> Dict[str, object]:
        handler = self._handlers().get(name)
        if handler is None:
            raise EnvshieldError(f"Unknown tool: {name}")
        return handler(**args)

    def _handlers(self) -> Dict[str, Callable[..., Dict[str, object]]]:
        return {
            "list_secrets": self.list_secrets,
            "check_secret_exists": self.check_secret_exists,
            "run_with_secrets": self.run_with_secrets,
        }

    def list_secrets(self) -> Dict[str, object]:
        return {"secrets": self.secrets.names()}

    def check_secret_exists(self, name: str) -> Dict[str, object]:
        exists = self.secrets.has(name)
        return {
            "exists": exists,
            "sources": self.secrets.sources(name),
            "activeSource": self.secrets.active_source(name),
        }

    def run_with_secrets(
        self,
        command: str,
        secrets: List[str],
        timeout: Optional[int] = None,
        workingDir: Optional[str] = None,
    ) -> Dict[str, object]:
        """
        Run command with the named secrets injected.

        Admission happens before any secret is resolved: a rate-limited
        call or one naming an unknown secret never spawns anything.
        """
        invalid = _invalid_run_arguments(command, secrets, timeout, workingDir)
        if invalid:
            return _failure(invalid)

        if self.rate_limiter is not None and not self.rate_limiter.check():
            wait_seconds = math.ceil(self.rate_limiter.get_wait_time() / 1000)
            return _failure(
                "Rate limit exceeded. Too many commands requested. "
                f"Please wait {wait_seconds} seconds before trying again."
            )

        missing = [name for name in secrets if not self.secrets.has(name)]
        if missing:
            return _failure(f"Secrets not found: {', '.join(missing)}")

        secrets_map = {}
        for name in secrets:
            value = self.secrets.get(name)
            if value:
                secrets_map[name] = value

        result = self.executor.execute(
            ExecutionRequest(
                command=command,
                secrets=secrets_map,
                timeout_ms=DEFAULT_TIMEOUT_MS if timeout is None else timeout,
                working_dir=workingDir,
            )
        )
        return result.to_dict()

    def scrub_message(self, message: str) -> str:
        """Scrub every loaded secret out of an error message."""
        return self.scrubber.scrub(message, self.secrets.values()).text


def _invalid_run_arguments(
    command: object, secrets: object, timeout: object, working_dir: object
) -> Optional[str]:
    """Describe the first malformed run_with_secrets argument, if any."""
    if not isinstance(command, str):
        return "command must be a string"
    if not isinstance(secrets, list) or any(not isinstance(name, str) for name in secrets):
        return "secrets must be a list of secret names"
    # bool is an int subclass
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        return "timeout must be a positive number of milliseconds"
    if working_dir is not None and not isinstance(working_dir, str):
        return "workingDir must be a string"
    return None


def _failure(stderr: str) -> Dict[str, object]:
    return {"exitCode": 1, "stdout": "", "stderr": stderr, "redactedCount": 0}


def create_server(project_dir: Path, config: Optional[EnvshieldConfig] = None) -> EnvshieldServer:
    """Load config and secrets for project_dir and wire up the components."""
    config = config or load_config(project_dir)
    secrets = load_secrets(project_dir, config.env_files)
    scrubber = Scrubber(config.redact_mode, config.redact_patterns)
    executor = CommandExecutor(scrubber, config.blocked_commands)

    rate_limiter = None
    if config.rate_limit.enabled:
        rate_limiter = RateLimiter(config.rate_limit.max_requests, config.rate_limit.window_ms)

    logger.info("Loaded %d secrets from %s", len(secrets), project_dir)
    return EnvshieldServer(
        config=config,
        secrets=secrets,
        scrubber=scrubber,
        executor=executor,
        rate_limiter=rate_limiter,
    )


def handle_request(server: EnvshieldServer, request: Dict[str, object]) -> Dict[str, object]:
    """Handle one decoded request payload."""
    request_id = request.get("id")
    method = request.get("method")

    if method == "tools/list":
        return {"id": request_id, "result": {"tools": server.get_tools()}}
    if method != "tools/call":
        return _error(request_id, "UNKNOWN_METHOD", f"unknown method: {method}")

    params = request.get("params", {})
    if not isinstance(params, dict) or not isinstance(params.get("name"), str):
        return _error(request_id, "INVALID_REQUEST", "params.name must be a string")
    arguments = params.get("arguments") or {}
    if not isinstance(arguments, dict):
        return _error(request_id, "INVALID_REQUEST", "params.arguments must be an object")

    try:
        result = server.call_tool(params["name"], arguments)
    except Exception as e:
        logger.debug("Tool %s failed", params["name"], exc_info=True)
        return _error(request_id, "TOOL_ERROR", server.scrub_message(str(e)))
    return {"id": request_id, "result": result}


def _error(request_id: object, code: str, message: str) -> Dict[str, object]:
    return {"id": request_id, "error": {"code": code, "message": message}}


def serve_stdio(
    server: EnvshieldServer,
    input_stream: Optional[IO[str]] = None,
    output_stream: Optional[IO[str]] = None,
) -> None:
    """Serve line-delimited JSON requests until input closes."""
    input_stream = input_stream or sys.stdin
    output_stream = output_stream or sys.stdout
    for line in input_stream:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            response = _error(None, "INVALID_JSON", str(e))
        else:
            if isinstance(request, dict):
                response = handle_request(server, request)
            else:
                response = _error(None, "INVALID_REQUEST", "request must be an object")
        output_stream.write(json.dumps(response, ensure_ascii=True) + "\n")
        output_stream.flush()
