# src/sfconn/env_loader.py
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

_logger = logging.getLogger(__name__)


def _default_candidates() -> list[Path]:
    explicit = os.getenv("SFCONN_ENV_FILE")
    if explicit:
        return [Path(explicit).expanduser()]
    cwd = Path.cwd()
    return [cwd / ".env", cwd / ".dotenv"]


def load_env_files(
    candidates: Optional[Iterable[Path]] = None,
    *,
    quiet: bool = False,
    override: bool = False,
) -> Optional[Path]:
    """Load the first existing .env file and return its path.

    - ``SFCONN_ENV_FILE`` names the file explicitly.
    - Otherwise .env / .dotenv in the current working directory.
    - Variables already set in the environment win unless ``override``.
    """
    paths = list(candidates) if candidates is not None else _default_candidates()

    for path in paths:
        if path.exists():
            load_dotenv(path, override=override)
            if not quiet:
                _logger.debug("Loaded environment variables from %s", path)
            return path

    if not quiet:
        _logger.debug("No env file found among %s", ", ".join(str(p) for p in paths))
    return None
