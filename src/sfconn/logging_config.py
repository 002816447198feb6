from __future__ import annotations

import logging
from typing import Optional

_DEFAULT_FMT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DEFAULT_DATEFMT = "%H:%M:%S"

_NOISY_LOGGERS = ("urllib3.connection", "urllib3.connectionpool")


def configure_logging(level: Optional[int]) -> None:
    """Configure root logging once; later calls only adjust the level."""
    lvl = level if level is not None else logging.WARNING
    root = logging.getLogger()

    if root.handlers:
        root.setLevel(lvl)
    else:
        logging.basicConfig(
            level=lvl,
            format=_DEFAULT_FMT,
            datefmt=_DEFAULT_DATEFMT,
        )

    # urllib3 logs every connection at DEBUG and header parsing noise at WARNING
    floor = logging.ERROR if lvl > logging.DEBUG else logging.INFO
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(floor)
