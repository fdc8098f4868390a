"""Configuration loader with validation."""

from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import WavepilotConfig


class ConfigError(Exception):
    """Configuration error."""

    pass


def load_config(config_path: Path) -> WavepilotConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config YAML file

    Returns:
        Validated WavepilotConfig instance

    Raises:
        ConfigError: If config file missing or invalid
    """
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if not data:
        raise ConfigError(f"Empty configuration file: {config_path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping: {config_path}")

    # Relative repo roots are relative to the config file, not the cwd
    repo = data.get("repo")
    if isinstance(repo, dict) and "root" in repo:
        root_path = Path(repo["root"])
        if not root_path.is_absolute():
            repo["root"] = (config_path.parent / root_path).resolve()

    try:
        return WavepilotConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}")


def create_default_config(config_path: Path, repo_root: Path | None = None) -> None:
    """Create default configuration file.

    Args:
        config_path: Path where config should be created
        repo_root: Repository root to record (defaults to the cwd)
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = {
        "repo": {
            "root": str((repo_root or Path.cwd()).resolve()),
            "feature_branch": None,
            "remote": "origin",
        },
        "source": {
            "kind": "milestones",
            "slug": "my-feature",
        },
        "worktree": {
            "namespace": "wavepilot",
        },
        "loop": {
            "max_attempts": 3,
            "claim_poll_interval_sec": 30,
            "max_context_chars": 12000,
            "cleanup_stale_on_start": True,
            "preserve_work_on_abort": True,
        },
        "agent": {
            "cli_path": "claude",
            "args": ["-p", "-", "--dangerously-skip-permissions"],
            "timeout_sec": None,
        },
        "verifier": {
            "mode": "commands",
            "gates": {
                "lint": "ruff check .",
                "tests": "pytest -q",
            },
            "timeout_sec": 600,
        },
        "merge": {
            "max_attempts": 3,
            "retry_delay_sec": 2,
            "push": False,
        },
        "logging": {
            "level": "INFO",
            "log_dir": ".wavepilot/logs",
        },
    }

    with open(config_path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
