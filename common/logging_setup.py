from __future__ import annotations

import logging


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
    )
    # paho is chatty at DEBUG; keep it one notch quieter than the service.
    if level.upper() == "DEBUG":
        logging.getLogger("paho").setLevel(logging.INFO)
