"""
Environment-driven settings for perpsim.

Loads the project-root .env once and resolves engine defaults from
PERPSIM_* variables, falling back to the constants in perpsim.config.

Usage:
    from perpsim.settings import load_config, get_engine_defaults, setup_logging

    load_config()
    setup_logging()
    defaults = get_engine_defaults()
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from perpsim import config

logger = logging.getLogger(__name__)

# Flag to track if config has been loaded
_CONFIG_LOADED = False


def load_config(force_reload: bool = False, env_path: Optional[Path] = None) -> bool:
    """
    Load environment variables from the project root .env file.

    A missing .env is not an error; variables may already be set by the
    process environment.

    Args:
        force_reload: If True, reload even if already loaded
        env_path: Explicit .env location (defaults to project root)

    Returns:
        True if a .env file was read
    """
    global _CONFIG_LOADED

    if _CONFIG_LOADED and not force_reload:
        return False

    from dotenv import load_dotenv

    if env_path is None:
        env_path = Path(__file__).parent.parent / '.env'

    loaded = False
    if env_path.exists():
        loaded = load_dotenv(env_path, override=True)

    _CONFIG_LOADED = True
    return loaded


def _env_float(name: str, default: float) -> float:
    """Read a float env var, warning and falling back on bad input."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


def get_engine_defaults() -> Dict[str, Any]:
    """
    Resolve BacktestConfig defaults from the environment.

    Recognised variables:
        PERPSIM_FEE_RATE, PERPSIM_MAINTENANCE_BUFFER,
        PERPSIM_DECISION_TIMEOUT, PERPSIM_MAX_POSITION_FRACTION

    Returns:
        Dict of BacktestConfig keyword arguments
    """
    load_config()
    return {
        'fee_rate': _env_float('PERPSIM_FEE_RATE', config.TAKER_FEE_RATE),
        'maintenance_margin_buffer': _env_float(
            'PERPSIM_MAINTENANCE_BUFFER', config.MAINTENANCE_MARGIN_BUFFER
        ),
        'decision_timeout_seconds': _env_float(
            'PERPSIM_DECISION_TIMEOUT', config.DECISION_TIMEOUT_SECONDS
        ),
        'max_position_fraction': _env_float(
            'PERPSIM_MAX_POSITION_FRACTION', config.MAX_POSITION_FRACTION
        ),
    }


def get_log_level() -> str:
    """Log level from PERPSIM_LOG_LEVEL, defaulting to config.LOG_LEVEL."""
    load_config()
    level = os.environ.get('PERPSIM_LOG_LEVEL', config.LOG_LEVEL).upper()
    if not isinstance(logging.getLevelName(level), int):
        logger.warning(f"Unknown PERPSIM_LOG_LEVEL {level!r}, using {config.LOG_LEVEL}")
        return config.LOG_LEVEL
    return level


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure root logging for simulation runs."""
    handlers = [logging.StreamHandler()]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, (level or get_log_level()).upper()),
        format=config.LOG_FORMAT,
        datefmt=config.LOG_DATE_FORMAT,
        handlers=handlers,
    )
