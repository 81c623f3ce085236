"""Environment configuration management for Plan Takeoff.

Loads environment variables from .env files with local overrides winning.

File Priority (highest to lowest):
1. .env.local (local secrets, gitignored)
2. .env (base configuration)
3. Environment variables already set by the shell / host
"""

import os
import logging
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_environment(env_dir: Optional[Union[str, Path]] = None) -> None:
    """Load environment variables from .env files.

    Args:
        env_dir: Directory containing .env files. Defaults to current directory.
    """
    if env_dir is None:
        env_dir = Path.cwd()
    else:
        env_dir = Path(env_dir)

    # Load files in reverse priority order (last loaded wins)
    env_files = [
        env_dir / ".env",
        env_dir / ".env.local",
    ]

    loaded_files = []
    for env_file in env_files:
        if env_file.exists():
            load_dotenv(env_file, override=True)
            loaded_files.append(env_file.name)
            logger.debug(f"Loaded environment from {env_file}")

    if loaded_files:
        logger.info(f"Environment loaded from: {', '.join(loaded_files)}")
    else:
        logger.debug("No .env files found")


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid

    Returns:
        Boolean value
    """
    value = os.getenv(key, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    elif value in ("false", "0", "no", "off"):
        return False
    else:
        return default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid

    Returns:
        Integer value
    """
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        logger.warning(f"Invalid integer value for {key}, using default: {default}")
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable, falling back to default when invalid."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        logger.warning(f"Invalid float value for {key}, using default: {default}")
        return default


def validate_required_env_vars(required_vars: list[str]) -> list[str]:
    """Validate that required environment variables are set.

    Args:
        required_vars: List of required environment variable names

    Returns:
        List of missing variables
    """
    missing = []
    for var in required_vars:
        value = os.getenv(var)
        if not value or value.strip() in ("", "your-api-key-here", "placeholder"):
            missing.append(var)

    return missing
