import logging
from pathlib import Path
from typing import Optional, Union

# third-party loggers that flood INFO during per-cluster fits
_QUIET_LOGGERS = ("numba", "pydeseq2", "anndata")


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level {level!r}")
    return value


def init_logging(logfile: Optional[Path] = None, level: Union[int, str] = logging.INFO) -> None:
    """
    Route pbds logging to stderr and, optionally, to ``logfile``.

    Handlers already attached to the root logger are dropped first so that
    repeated CLI invocations in one interpreter do not duplicate lines.
    """
    level = _coerce_level(level)

    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
