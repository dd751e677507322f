"""Route one unit of work to an agent's sandbox, or run it directly."""
from __future__ import annotations

import asyncio
import os
import time
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from app.config import DispatchConfig
from app.core.errors import OrchestratorError
from app.core.models import AgentConfig, DispatchResult, Task
from app.orchestration.output_parser import clean_output, parse_agent_output
from app.services.sandbox_manager import SandboxManager

logger = structlog.get_logger(__name__)

_READ_CHUNK = 64 * 1024

# Host variables handed to a task when its agent has access to the platform.
PLATFORM_ENV_VARS: Dict[str, Tuple[str, ...]] = {
    "aws": ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_DEFAULT_REGION"),
    "gcp": ("GOOGLE_APPLICATION_CREDENTIALS_JSON", "GCP_PROJECT_ID"),
    "vercel": ("VERCEL_TOKEN",),
    "supabase": ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"),
    "github": ("GITHUB_TOKEN",),
    "slack": ("SLACK_BOT_TOKEN", "SLACK_APP_TOKEN"),
    "dockerhub": ("DOCKER_USERNAME", "DOCKER_PASSWORD"),
    "cloudflare": ("CLOUDFLARE_API_TOKEN", "CLOUDFLARE_ACCOUNT_ID"),
}


class OutputLimitExceeded(Exception):
    pass


def resolve_platform_env(
    platform_access: Iterable[str], environ: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """Collect the credentials an agent may use from the host environment.

    ``"*"`` grants every known platform. Unset or empty variables are skipped.
    """
    source = os.environ if environ is None else environ
    granted = set(platform_access)
    platforms = PLATFORM_ENV_VARS if "*" in granted else {
        key: names for key, names in PLATFORM_ENV_VARS.items() if key in granted
    }
    env: Dict[str, str] = {}
    for names in platforms.values():
        for name in names:
            value = source.get(name)
            if value:
                env[name] = value
    return env


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _read_bounded(stream: Optional[asyncio.StreamReader], limit: int) -> bytes:
    if stream is None:
        return b""
    chunks: List[bytes] = []
    size = 0
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return b"".join(chunks)
        size += len(chunk)
        if size > limit:
            raise OutputLimitExceeded(f"Output exceeded {limit} bytes")
        chunks.append(chunk)


class TaskDispatcher:
    """Execute agent work and normalize whatever comes back.

    Sandboxed execution is preferred; when container mode is off the same
    command runs as a child process of the control plane. Either way the
    caller gets a :class:`DispatchResult` and never an exception.
    """

    def __init__(self, sandboxes: SandboxManager, settings: DispatchConfig) -> None:
        self._sandboxes = sandboxes
        self._settings = settings

    @property
    def mode(self) -> str:
        return "container" if self._sandboxes.available else "direct"

    def build_args(self, input_text: str, session_id: str, thinking_level: str) -> List[str]:
        return [
            "agent", "--local",
            "--agent", "main",
            "--session-id", session_id,
            "--thinking", thinking_level,
            "--json",
            "-m", input_text,
        ]

    async def dispatch(
        self,
        agent: AgentConfig,
        task: Optional[Task],
        input_text: str,
        *,
        session_id: Optional[str] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> DispatchResult:
        started = time.monotonic()
        try:
            if self._sandboxes.available:
                return await self.exec_in_sandbox(
                    agent,
                    input_text,
                    session_id=session_id,
                    thinking_level=agent.thinking.value,
                    extra_env=extra_env,
                )
            return await self.direct_execute(agent, input_text, extra_env)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "dispatch_failed",
                agent=agent.name,
                task_id=task.id if task else None,
            )
            return DispatchResult(
                success=False,
                agent_id=agent.id,
                agent_name=agent.name,
                duration_ms=_elapsed_ms(started),
                error=f"Dispatch failed: {exc}",
            )

    async def exec_in_sandbox(
        self,
        agent: AgentConfig,
        input_text: str,
        *,
        session_id: Optional[str] = None,
        thinking_level: Optional[str] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> DispatchResult:
        """Run the command inside the agent's sandbox, creating it on demand."""
        started = time.monotonic()
        ceiling = self._settings.exec_timeout
        session = session_id or f"agent-{agent.id}"
        thinking = thinking_level or agent.thinking.value or self._settings.default_thinking

        def failure(message: str) -> DispatchResult:
            return DispatchResult(
                success=False,
                agent_id=agent.id,
                agent_name=agent.name,
                duration_ms=_elapsed_ms(started),
                error=message,
            )

        try:
            await self._sandboxes.ensure_created(agent)
        except OrchestratorError as exc:
            return failure(f"Sandbox unavailable: {exc}")

        name = self._sandboxes.name_for(agent.name)
        command = [self._settings.command, *self.build_args(input_text, session, thinking)]
        try:
            output = await asyncio.wait_for(
                self._sandboxes.runtime.exec(
                    name,
                    command,
                    environment=extra_env,
                    timeout=ceiling,
                    max_output_bytes=self._settings.max_output_bytes,
                ),
                timeout=ceiling,
            )
        except asyncio.TimeoutError:
            logger.warning("exec_timed_out", container=name, agent=agent.name, timeout=ceiling)
            return failure(f"Execution timed out ({ceiling:g}s)")
        except OrchestratorError as exc:
            return failure(f"Stream error: {exc}")

        if output.truncated:
            return failure(f"Output exceeded {self._settings.max_output_bytes} bytes")

        cleaned = clean_output(output.output).strip()
        duration_ms = _elapsed_ms(started)
        logger.info(
            "exec_completed",
            agent=agent.name,
            duration_ms=duration_ms,
            output_bytes=len(cleaned),
            exit_code=output.exit_code,
        )
        return parse_agent_output(cleaned, duration_ms, agent)

    async def direct_execute(
        self,
        agent: AgentConfig,
        input_text: str,
        extra_env: Optional[Dict[str, str]] = None,
        callback: Optional[Callable[[DispatchResult], None]] = None,
    ) -> DispatchResult:
        """Run the command as a child of this process; no sandbox involved."""
        result = await self._run_direct(agent, input_text, extra_env or {})
        if callback is not None:
            try:
                callback(result)
            except Exception:  # noqa: BLE001
                logger.exception("direct_execute_callback_failed", agent=agent.name)
        return result

    async def _run_direct(
        self, agent: AgentConfig, input_text: str, extra_env: Dict[str, str]
    ) -> DispatchResult:
        started = time.monotonic()
        ceiling = self._settings.exec_timeout
        limit = self._settings.max_output_bytes
        session = f"local-{agent.id}"
        thinking = agent.thinking.value or self._settings.default_thinking

        def failure(message: str) -> DispatchResult:
            return DispatchResult(
                success=False,
                agent_id=agent.id,
                agent_name=agent.name,
                duration_ms=_elapsed_ms(started),
                error=message,
            )

        try:
            proc = await asyncio.create_subprocess_exec(
                self._settings.command,
                *self.build_args(input_text, session, thinking),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **extra_env, "HOME": self._settings.home_dir},
            )
        except OSError as exc:
            return failure(f"Failed to start {self._settings.command}: {exc}")

        async def collect() -> tuple:
            out, err = await asyncio.gather(
                _read_bounded(proc.stdout, limit), _read_bounded(proc.stderr, limit)
            )
            await proc.wait()
            return out, err

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(collect(), timeout=ceiling)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.warning("direct_exec_timed_out", agent=agent.name, timeout=ceiling)
            return failure(f"Execution timed out ({ceiling:g}s)")
        except OutputLimitExceeded as exc:
            await self._kill(proc)
            return failure(str(exc))

        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if stderr:
            logger.debug("direct_exec_stderr", agent=agent.name, stderr=stderr[:200])

        if proc.returncode != 0 and not stdout:
            if "No API key" in stderr:
                return failure("No API key configured")
            detail = f": {stderr[:200]}" if stderr else ""
            return failure(f"Agent command exited with status {proc.returncode}{detail}")

        return parse_agent_output(stdout, _elapsed_ms(started), agent)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()
