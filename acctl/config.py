"""
Configuration management for acctl.

The configuration is stored as a TOML file in the acctl home directory
($ACCTL_HOME or ~/.acctl). It names the roles used to reach the organization
and its accounts and sets execution limits. Environment variables override
values from the file.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import tomli_w

from .aws import DEFAULT_MASTER_ROLE, IAM_PATH


CONFIG_FILENAME = "acctl.toml"
CONFIG_VERSION = 1


@dataclass
class AWSConfig:
    """Where and as whom to connect."""
    region: str = ""
    profile: str = ""
    master_role: str = DEFAULT_MASTER_ROLE
    common_role: str = ""
    iam_path: str = IAM_PATH


@dataclass
class ExecConfig:
    """Concurrency and timing limits."""
    workers: int = 50
    create_workers: int = 5
    poll_interval: float = 1.0
    # Time for a competing allocation to land before ownership is read back
    alloc_verify_delay: float = 10.0

    def validate(self) -> None:
        """Raise ValueError if any limit is out of range."""
        if self.workers < 1:
            raise ValueError(f"workers must be positive, got {self.workers}")
        if self.create_workers < 1:
            raise ValueError(f"create_workers must be positive, got {self.create_workers}")
        if self.poll_interval < 0:
            raise ValueError(f"poll_interval must not be negative, got {self.poll_interval}")
        if self.alloc_verify_delay < 0:
            raise ValueError(
                f"alloc_verify_delay must not be negative, got {self.alloc_verify_delay}"
            )


@dataclass
class AcctlConfig:
    """Complete acctl configuration."""
    path: Path
    version: int = CONFIG_VERSION
    aws: AWSConfig = field(default_factory=AWSConfig)
    exec: ExecConfig = field(default_factory=ExecConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        return self.config_path.exists()


def get_config_dir() -> Path:
    """Resolve the config directory, respecting ACCTL_HOME."""
    home = os.environ.get("ACCTL_HOME")
    if home:
        return Path(home)
    return Path.home() / ".acctl"


def load_config(config_dir: Path) -> AcctlConfig:
    """
    Load configuration from a config directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = config_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("acctl", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    aws = data.get("aws", {})
    ex = data.get("exec", {})
    defaults = ExecConfig()
    try:
        exec_cfg = ExecConfig(
            workers=int(ex.get("workers", defaults.workers)),
            create_workers=int(ex.get("create_workers", defaults.create_workers)),
            poll_interval=float(ex.get("poll_interval", defaults.poll_interval)),
            alloc_verify_delay=float(ex.get("alloc_verify_delay", defaults.alloc_verify_delay)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid [exec] section in {config_path}: {e}") from e
    try:
        exec_cfg.validate()
    except ValueError as e:
        raise ValueError(f"Invalid [exec] section in {config_path}: {e}") from e

    return AcctlConfig(
        path=config_dir,
        version=version,
        aws=AWSConfig(
            region=aws.get("region", ""),
            profile=aws.get("profile", ""),
            master_role=aws.get("master_role", DEFAULT_MASTER_ROLE),
            common_role=aws.get("common_role", ""),
            iam_path=aws.get("iam_path", IAM_PATH),
        ),
        exec=exec_cfg,
    )


def save_config(config: AcctlConfig) -> None:
    """
    Save configuration to the config directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "acctl": {"version": config.version},
        "aws": {
            "region": config.aws.region,
            "profile": config.aws.profile,
            "master_role": config.aws.master_role,
            "common_role": config.aws.common_role,
            "iam_path": config.aws.iam_path,
        },
        "exec": {
            "workers": config.exec.workers,
            "create_workers": config.exec.create_workers,
            "poll_interval": config.exec.poll_interval,
            "alloc_verify_delay": config.exec.alloc_verify_delay,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def apply_env_overrides(config: AcctlConfig) -> AcctlConfig:
    """Override config values from ACCTL_* environment variables."""
    env = os.environ
    if env.get("ACCTL_MASTER_ROLE"):
        config.aws.master_role = env["ACCTL_MASTER_ROLE"]
    if env.get("ACCTL_COMMON_ROLE"):
        config.aws.common_role = env["ACCTL_COMMON_ROLE"]
    if env.get("ACCTL_REGION"):
        config.aws.region = env["ACCTL_REGION"]
    if env.get("ACCTL_PROFILE"):
        config.aws.profile = env["ACCTL_PROFILE"]
    if env.get("ACCTL_WORKERS"):
        try:
            config.exec.workers = int(env["ACCTL_WORKERS"])
        except ValueError:
            raise ValueError(f"ACCTL_WORKERS must be an integer, got {env['ACCTL_WORKERS']!r}")
    config.exec.validate()
    return config


def load_or_create_config(config_dir: Optional[Path] = None) -> AcctlConfig:
    """
    Load existing config or create a new one with defaults, then apply
    environment overrides.

    This is the main entry point for config management.
    """
    config_dir = config_dir or get_config_dir()
    if (config_dir / CONFIG_FILENAME).exists():
        config = load_config(config_dir)
    else:
        config = AcctlConfig(path=config_dir)
        save_config(config)
    return apply_env_overrides(config)
