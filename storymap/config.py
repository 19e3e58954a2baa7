"""
Storymap settings, read from STORYMAP_* environment variables.
"""

import os
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from storymap.errors import ConfigError


class Config(BaseModel):
    """
    Runtime settings.

    Most used:
    - STORYMAP_DB_URL (preferred) or STORYMAP_DB_PATH for SQLite fallback.
    - STORYMAP_ENV (default: local)
    - STORYMAP_API_TOKEN (optional bearer token)
    - STORYMAP_WEBHOOK_TOKEN (optional shared secret for agent callbacks)
    - STORYMAP_LOG_LEVEL (default: INFO)
    - STORYMAP_DATA_DIR (root for per-project clones, default: .storymap)
    - STORYMAP_AGENT_ENDPOINT (execution client URL; local client when unset)
    """

    # Database
    db_url: Optional[str] = Field(default=None)
    db_path: Path = Field(default=Path(".storymap.sqlite"))
    db_pool_size: int = Field(default=5)

    # Environment
    environment: str = Field(default="local")
    api_token: Optional[str] = Field(default=None)
    webhook_token: Optional[str] = Field(default=None)
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    # Repositories
    data_dir: Path = Field(default=Path(".storymap"))
    github_token: Optional[str] = Field(default=None)

    # Execution client
    agent_endpoint: Optional[str] = Field(default=None)
    agent_token: Optional[str] = Field(default=None)
    agent_timeout_seconds: float = Field(default=30.0)

    # Policy defaults
    default_required_checks: List[str] = Field(default_factory=lambda: ["lint"])
    strict_workflow_checks: bool = Field(default=False)
    stale_run_minutes: int = Field(default=0)  # 0 disables recovery

    # Git settings
    git_lock_max_retries: int = Field(default=5)
    git_lock_retry_delay: float = Field(default=1.0)

    # API / web
    cors_allow_origins: List[str] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def is_postgres(self) -> bool:
        return bool(self.db_url and self.db_url.startswith("postgres"))

    @property
    def repos_dir(self) -> Path:
        """Root directory holding one clone per project."""
        return self.data_dir / "repos"


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: str, kind: type = int):
    raw = os.environ.get(name, default)
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name} is not a valid {kind.__name__}: {raw!r}", metadata={"variable": name})


def _parse_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    if value.strip() == "*":
        return ["*"]
    return [v.strip() for v in value.split(",") if v.strip()]


def load_config() -> Config:
    """
    Build a Config from the current environment; local runs allow any CORS origin.

    Raises:
        ConfigError: a numeric variable does not parse.
    """
    env = os.environ.get("STORYMAP_ENV", "local")
    cors = _parse_csv(os.environ.get("STORYMAP_CORS_ORIGINS"))
    if not cors and env == "local":
        cors = ["*"]
    required_checks = _parse_csv(os.environ.get("STORYMAP_DEFAULT_REQUIRED_CHECKS")) or ["lint"]
    return Config(
        # Database
        db_url=os.environ.get("STORYMAP_DB_URL"),
        db_path=Path(os.environ.get("STORYMAP_DB_PATH", ".storymap.sqlite")).expanduser(),
        db_pool_size=_env_number("STORYMAP_DB_POOL_SIZE", "5"),

        # Environment
        environment=env,
        api_token=os.environ.get("STORYMAP_API_TOKEN"),
        webhook_token=os.environ.get("STORYMAP_WEBHOOK_TOKEN"),
        log_level=os.environ.get("STORYMAP_LOG_LEVEL", "INFO"),
        log_json=_parse_bool(os.environ.get("STORYMAP_LOG_JSON")),

        # Repositories
        data_dir=Path(os.environ.get("STORYMAP_DATA_DIR", ".storymap")).expanduser(),
        github_token=os.environ.get("STORYMAP_GITHUB_TOKEN") or os.environ.get("GITHUB_TOKEN") or None,

        # Execution client
        agent_endpoint=os.environ.get("STORYMAP_AGENT_ENDPOINT") or None,
        agent_token=os.environ.get("STORYMAP_AGENT_TOKEN") or None,
        agent_timeout_seconds=_env_number("STORYMAP_AGENT_TIMEOUT_SECONDS", "30", float),

        # Policy
        default_required_checks=required_checks,
        strict_workflow_checks=_parse_bool(os.environ.get("STORYMAP_STRICT_WORKFLOW_CHECKS")),
        stale_run_minutes=_env_number("STORYMAP_STALE_RUN_MINUTES", "0"),

        # Git
        git_lock_max_retries=_env_number("STORYMAP_GIT_LOCK_MAX_RETRIES", "5"),
        git_lock_retry_delay=_env_number("STORYMAP_GIT_LOCK_RETRY_DELAY", "1.0", float),

        # API / web
        cors_allow_origins=cors,
    )


# Process-wide instance for import-time consumers such as the CORS setup
_config: Optional[Config] = None
_config_lock = threading.Lock()


def get_config() -> Config:
    """Load the process-wide config once."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def _reset_config_for_tests() -> None:
    """Forget the cached config so the next get_config() rereads the environment."""
    global _config
    with _config_lock:
        _config = None
