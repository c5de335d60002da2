import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


def load_env_file(path: Optional[str] = None) -> bool:
    """Load a local .env file without touching variables that are already exported.

    WHAT:
        Reads `path` (or the nearest .env) into os.environ with override=False.
    WHY:
        Local worker and scheduler runs pick up credentials from .env while
        exported production variables always win.
    """
    from dotenv import load_dotenv

    loaded = load_dotenv(dotenv_path=path, override=False)
    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found")
    return loaded


def require_env(name: str, hint: str = "") -> str:
    """Return a mandatory variable, falling back to .env once before giving up.

    Raises:
        RuntimeError: the variable is unset or empty in both places
    """
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)
    if not value:
        message = f"{name} is not set. Export it or add it to .env."
        raise RuntimeError(f"{message} {hint}".strip())
    return value
