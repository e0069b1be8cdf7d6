"""
Shared .env loader and typed env readers. No python-dotenv dependency.
Load BEFORE importing AlpacaClient, BotManager, or any module that reads os.environ at import time.
"""
import logging
import os
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes", "y", "on")


def load_env(paths: Union[None, str, List[str]] = None) -> None:
    """Load .env from given paths. Existing env vars win. Missing paths skipped."""
    if paths is None:
        base = os.path.dirname(os.path.abspath(__file__))
        paths = [
            os.path.join(base, ".env"),
            os.path.join(os.getcwd(), ".env"),
        ]
    if isinstance(paths, str):
        paths = [paths]
    for p in paths:
        if not p or not os.path.exists(p):
            continue
        try:
            with open(p, "r", encoding="utf-8") as f:
                for raw in f:
                    line = raw.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    if line.startswith("export "):
                        line = line[len("export "):]
                    k, v = line.split("=", 1)
                    k, v = k.strip(), v.strip().strip('"').strip("'")
                    if k and k not in os.environ:
                        os.environ[k] = v
        except OSError:
            logger.exception("load_env: failed to load %s", p)


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("env %s=%r is not an int, using %s", name, raw, default)
        return default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning("env %s=%r is not a number, using %s", name, raw, default)
        return default


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()
