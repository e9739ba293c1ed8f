import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root.setLevel(resolved)

    for handler in root.handlers:
        if getattr(handler, "_telemetry_sync", False):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._telemetry_sync = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    # one access line per status poll otherwise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
