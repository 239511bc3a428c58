"""Configuration settings for AgentLoop."""

from __future__ import annotations

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pydantic settings class for AgentLoop.

    Values are read from ``AGENTLOOP_*`` environment variables or a ``.env``
    file. Instances are built once and passed to the services that need them.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTLOOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Inference backend
    OLLAMA_BASE_URL: str = "http://127.0.0.1:11434"
    REQUEST_TIMEOUT: float = 120.0
    STREAM: bool = True
    TEMPERATURE: float = 0.7
    STOP_MARKERS: list[str] = ["<|end|>", "<|user|>", "<|assistant|>"]
    MAX_RESPONSE_CHARS: int = 8000

    # Models
    CODE_MODEL: str = "deepseek-coder-v2:16b"
    CHAT_MODEL: str = "dolphin-llama3"
    FAST_MODEL: str = "dolphin-llama3"
    EXPLICIT_MODEL: str = "wizardlm-uncensored:13b"
    BASELINE_MODEL: str = "llama3.2"
    # model -> substitute; derived from the models above when unset
    FALLBACK_MODELS: dict[str, str] | None = None

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_BACKOFF: float = 2.0
    RETRY_MULTIPLIER: float = 2.0
    MAX_TOTAL_ATTEMPTS: int = 6

    # Agent loop
    MAX_TURNS: int = 10
    MAX_TOOL_HOPS: int = 1
    HISTORY_TOKEN_BUDGET: int = 8192
    CHAT_ROUTING: bool = True

    # Permissions
    DATA_DIR: str = "~/.agentloop"
    PERSIST_APPROVALS: bool = False
    AUDIT_CAPACITY: int = 1000
    APPROVAL_TIMEOUT: float | None = None

    # Command execution
    COMMAND_TIMEOUT: float = 60.0
    COMMAND_KILL_GRACE: float = 5.0
    MAX_OUTPUT_BYTES: int = 10 * 1024

    # Process
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000

    @model_validator(mode="after")
    def _default_fallback_graph(self) -> Settings:
        """Build the specialized -> general-purpose -> baseline fallback graph."""
        if self.FALLBACK_MODELS is None:
            edges = [
                (self.CODE_MODEL, self.CHAT_MODEL),
                (self.EXPLICIT_MODEL, self.CHAT_MODEL),
                (self.CHAT_MODEL, self.BASELINE_MODEL),
                (self.FAST_MODEL, self.BASELINE_MODEL),
            ]
            graph: dict[str, str] = {}
            for model, fallback in edges:
                if model != fallback:
                    graph.setdefault(model, fallback)
            self.FALLBACK_MODELS = graph
        return self

    @property
    def data_path(self) -> Path:
        """Expanded data directory."""
        return Path(self.DATA_DIR).expanduser()

    @property
    def permissions_db_path(self) -> Path:
        """SQLite file holding persistent scopes and the audit log."""
        return self.data_path / "permissions.db"
