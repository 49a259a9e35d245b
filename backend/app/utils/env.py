"""Environment access for vendor configuration.

Vendor credentials are read at call time through these helpers so a
missing variable fails only the requests that need it, with its exact name.
"""

import logging
import os
from typing import Iterable, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> None:
    """Merge backend/.env into os.environ without overriding exported values."""
    if load_dotenv(override=False):
        logger.info("[ENV] Loaded .env (exported variables take precedence)")
    else:
        logger.debug("[ENV] No .env file found")


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Stripped value of `name`; unset and blank both count as missing."""
    value = (os.getenv(name) or "").strip()
    return value or default


def missing_env(names: Iterable[str]) -> List[str]:
    """Names from `names` that are unset or blank, in the given order."""
    return [name for name in names if get_env(name) is None]
