from __future__ import annotations

import logging

PERF_LEVEL_NUM = 25
PERF_LEVEL_NAME = "PERF"
PERF_LOGGER_NAME = "discovery.perf"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def register_perf_level() -> None:
    if logging.getLevelName(PERF_LEVEL_NUM) != PERF_LEVEL_NAME:
        logging.addLevelName(PERF_LEVEL_NUM, PERF_LEVEL_NAME)


def resolve_log_level(value: str | None, fallback: int = logging.INFO) -> int:
    if not value:
        return fallback
    name = value.strip().upper()
    if name == PERF_LEVEL_NAME:
        return PERF_LEVEL_NUM
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else fallback


def configure_logging(app_level: str | None = None, perf_level: str | None = None) -> None:
    """Set up root logging plus the ``discovery.perf`` query-trace logger.

    Levels default to the ``LOG_LEVEL`` / ``PERF_LOG_LEVEL`` settings. Setting the
    perf level above PERF (e.g. WARNING) silences per-query trace lines.
    """
    from ..config import settings

    register_perf_level()
    app_log_level = resolve_log_level(app_level or settings.log_level)
    perf_log_level = resolve_log_level(perf_level or settings.perf_log_level, fallback=PERF_LEVEL_NUM)

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(app_log_level)
    else:
        logging.basicConfig(level=app_log_level, format=LOG_FORMAT)

    logging.getLogger(PERF_LOGGER_NAME).setLevel(perf_log_level)
