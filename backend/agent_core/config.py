"""
Orchestrator configuration.

Values come from three layers, later ones winning:
1. Defaults on OrchestratorConfig
2. backend/config/agent_config.yaml (or an explicit path)
3. AGENT_* environment variables, after .env is loaded with python-dotenv
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional, Union

import structlog
import yaml
from dotenv import load_dotenv

from agent_core.agents.context_manager import TokenModel
from agent_core.core.errors import ConfigError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "agent_config.yaml"

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Use the available tools when they help "
    "answer the user's request, and answer directly otherwise."
)


@dataclass
class OrchestratorConfig:
    """Runtime settings for one orchestrator."""
    # context
    max_context_tokens: int = 4096
    token_model: TokenModel = TokenModel.GPT
    summary_max_chars: int = 200
    max_messages: int = 100  # 0 disables the count limit
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # tools
    max_tool_rounds_per_turn: int = 3
    tool_timeout: float = 30.0
    max_tool_retries: int = 1
    tool_retry_base_delay: float = 0.0
    max_parallel_tools: int = 4
    max_input_chars: int = 100_000
    max_output_chars: int = 100_000
    feed_tool_errors_to_model: bool = False

    # llm
    llm_timeout: float = 120.0
    stream_responses: bool = True

    # planning
    enable_planning: bool = False
    enable_reflection: bool = False
    max_plan_steps: int = 8
    max_reflections: int = 5

    # logging
    log_level: str = "INFO"
    log_format: str = "console"

    def __post_init__(self):
        self.token_model = TokenModel(self.token_model)
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigError: A value is out of range
        """
        positive = ("max_context_tokens", "tool_timeout", "llm_timeout", "max_parallel_tools",
                    "max_plan_steps", "max_input_chars", "max_output_chars")
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        non_negative = ("max_tool_rounds_per_turn", "max_tool_retries", "tool_retry_base_delay",
                        "summary_max_chars", "max_reflections", "max_messages")
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative, got {getattr(self, name)}")

        if self.log_format not in ("console", "json"):
            raise ConfigError(f"log_format must be 'console' or 'json', got {self.log_format!r}")


# YAML section -> keys it may contain
SECTIONS: dict[str, tuple[str, ...]] = {
    "context": ("max_context_tokens", "token_model", "summary_max_chars", "max_messages", "system_prompt"),
    "tools": ("max_tool_rounds_per_turn", "tool_timeout", "max_tool_retries", "tool_retry_base_delay",
              "max_parallel_tools", "max_input_chars", "max_output_chars", "feed_tool_errors_to_model"),
    "llm": ("llm_timeout", "stream_responses"),
    "planning": ("enable_planning", "enable_reflection", "max_plan_steps", "max_reflections"),
    "logging": ("log_level", "log_format"),
}

ENV_PREFIX = "AGENT_"


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw YAML or environment value to the field's type."""
    default = getattr(OrchestratorConfig, name)
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                if value.strip().lower() in ("1", "true", "yes", "on"):
                    return True
                if value.strip().lower() in ("0", "false", "no", "off"):
                    return False
                raise ValueError(value)
            return bool(value)
        if isinstance(default, TokenModel):
            return TokenModel(str(value).lower())
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, 'r') as f:
        try:
            raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    values: dict[str, Any] = {}
    for section, keys in SECTIONS.items():
        section_cfg = raw_config.get(section) or {}
        if not isinstance(section_cfg, dict):
            raise ConfigError(f"Section '{section}' in {path} must be a mapping")
        for key, value in section_cfg.items():
            if key not in keys:
                logger.warning("Unknown config key ignored", section=section, key=key)
                continue
            values[key] = _coerce(key, value)
    return values


def _read_env() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for f in fields(OrchestratorConfig):
        raw = os.getenv(ENV_PREFIX + f.name.upper())
        if raw is not None:
            values[f.name] = _coerce(f.name, raw)
    return values


def load_config(path: Optional[Union[str, Path]] = None, use_env: bool = True) -> OrchestratorConfig:
    """
    Load configuration from YAML with environment overrides.

    Args:
        path: YAML file to read; defaults to backend/config/agent_config.yaml.
            A missing default file falls back to defaults, a missing explicit
            file is an error.
        use_env: Apply AGENT_* environment overrides

    Returns:
        A validated OrchestratorConfig

    Raises:
        ConfigError: The file is missing or malformed, or a value is invalid
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    values: dict[str, Any] = {}

    if config_path.exists():
        values.update(_read_yaml(config_path))
    elif path is not None:
        raise ConfigError(f"Config file not found: {config_path}")
    else:
        logger.warning("Config file not found, using defaults", path=str(config_path))

    if use_env:
        load_dotenv()
        values.update(_read_env())

    config = OrchestratorConfig(**values)
    logger.info(
        "Configuration loaded",
        config_path=str(config_path),
        max_context_tokens=config.max_context_tokens,
        enable_planning=config.enable_planning,
    )
    return config
