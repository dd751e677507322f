"""Configuration management for the orchestrator."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class ContainerConfig:
    """Docker runtime settings for per-agent sandboxes."""

    socket_url: str = "unix:///var/run/docker.sock"
    image: str = "agents-hub-worker-pool"
    network: str = "agents-hub_default"
    name_prefix: str = "openclaw-agent-"
    config_volume: str = "openclaw-config"
    sessions_volume: str = "openclaw-agent-sessions"
    settle_seconds: float = 2.0
    stop_grace_seconds: int = 5
    client_timeout: float = 10.0
    # "auto" checks the Docker socket at startup, "off" forces direct execution.
    mode: str = "auto"

    @property
    def enabled(self) -> bool:
        return self.mode != "off"


@dataclass(frozen=True)
class DispatchConfig:
    """Limits applied to every execution of the agent command."""

    command: str = "openclaw"
    exec_timeout: float = 180.0
    max_output_bytes: int = 10 * 1024 * 1024
    default_thinking: str = "medium"
    home_dir: str = "/root"


@dataclass(frozen=True)
class StreamConfig:
    """Live update cadence."""

    poll_interval: float = 2.0
    keepalive_interval: float = 25.0
    task_limit: int = 50


@dataclass(frozen=True)
class StorageConfig:
    """Where agents and the task tail are persisted."""

    data_dir: Path = Path("data")
    task_history_limit: int = 500
    analytics_window_days: int = 14

    @property
    def agents_path(self) -> Path:
        return self.data_dir / "agents.json"

    @property
    def tasks_path(self) -> Path:
        return self.data_dir / "tasks.json"


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    container: ContainerConfig = field(default_factory=ContainerConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        container = ContainerConfig(
            socket_url=os.getenv("DOCKER_SOCKET", "unix:///var/run/docker.sock"),
            image=os.getenv("AGENT_CONTAINER_IMAGE", "agents-hub-worker-pool"),
            network=os.getenv("DOCKER_NETWORK", "agents-hub_default"),
            name_prefix=os.getenv("AGENT_CONTAINER_PREFIX", "openclaw-agent-"),
            config_volume=os.getenv("AGENT_CONFIG_VOLUME", "openclaw-config"),
            sessions_volume=os.getenv("AGENT_SESSIONS_VOLUME", "openclaw-agent-sessions"),
            settle_seconds=float(os.getenv("AGENT_CONTAINER_SETTLE_SECONDS", "2")),
            stop_grace_seconds=int(os.getenv("AGENT_CONTAINER_STOP_GRACE", "5")),
            client_timeout=float(os.getenv("DOCKER_CLIENT_TIMEOUT", "10")),
            mode=os.getenv("CONTAINER_MODE", "auto").lower(),
        )
        dispatch = DispatchConfig(
            command=os.getenv("AGENT_COMMAND", "openclaw"),
            exec_timeout=float(os.getenv("AGENT_EXEC_TIMEOUT", "180")),
            max_output_bytes=int(os.getenv("AGENT_MAX_OUTPUT_BYTES", str(10 * 1024 * 1024))),
            default_thinking=os.getenv("DEFAULT_THINKING", "medium"),
            home_dir=os.getenv("AGENT_HOME", "/root"),
        )
        stream = StreamConfig(
            poll_interval=float(os.getenv("STREAM_POLL_INTERVAL", "2.0")),
            keepalive_interval=float(os.getenv("STREAM_KEEPALIVE_INTERVAL", "25.0")),
            task_limit=int(os.getenv("STREAM_TASK_LIMIT", "50")),
        )
        storage = StorageConfig(
            data_dir=Path(os.getenv("DATA_DIR", "data")),
            task_history_limit=int(os.getenv("TASK_HISTORY_LIMIT", "500")),
            analytics_window_days=int(os.getenv("ANALYTICS_WINDOW_DAYS", "14")),
        )

        return cls(
            container=container,
            dispatch=dispatch,
            stream=stream,
            storage=storage,
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "console").lower(),
        )


# Global config instance
config = Config.from_env()
