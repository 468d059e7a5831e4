"""Configuration management for Deckhand."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.deckhand/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.deckhand/sessions.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int = 4096
    api_key: str = ""
    base_url: str = ""
    use_function_calling: bool = False


class ContextConfig(BaseModel):
    """Conversation history budget."""

    max_tokens: int = 64000
    chars_per_token: int = 4


class ExecutionConfig(BaseModel):
    """Action execution pool and background process timing."""

    pool_size: int = Field(default=5, ge=1)
    observe_timeout: float = 60.0
    grace_period: float = 1.0
    background_wait: float = 5.0
    stop_grace_period: float = 5.0
    max_iterations: int | None = None


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]
    allowed_commands: list[str] = []
    max_output_chars: int = 10000


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = [
        "CommandLineTool",
        "FileEditor",
        "ThinkTool",
    ]
    json_write_prefixes: list[str] = ["FileEditor.", "ApiTool."]
    completion_sentinel: str = "TaskCompletion"
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)


class SessionConfig(BaseModel):
    """Session persistence configuration."""

    enabled: bool = False
    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Deckhand."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DECKHAND_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats values read from YAML (passed as init kwargs).
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """``./config.yaml`` when present, else the per-user file."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        return local_path if local_path.exists() else DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Build a config from a YAML file; a missing file yields defaults.

        Environment variables still override what the file says.
        """
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()
        data = {}
        if config_path.exists():
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> Path:
        """Write the current values as YAML and return the path written."""
        config_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(
            yaml.safe_dump(self.model_dump(exclude_none=True), default_flow_style=False, sort_keys=False),
            encoding="utf-8",
        )
        return config_path


_config: Config | None = None


def get_config() -> Config:
    """Process-wide configuration, loaded lazily on first access."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    global _config
    _config = config
