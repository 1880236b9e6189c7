from datetime import datetime
from logging import getLogger, basicConfig, DEBUG, INFO, WARNING, FileHandler, Formatter, Filter, LogRecord
from pathlib import Path
from typing import Optional

from config import LOG_LEVEL, LOG_PATH


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

# Loggers owned by this project; everything else counts as a library.
PROJECT_PREFIXES = ("scribe.", "__main__", "server", "transcribe")

# Libraries that are chatty at DEBUG (handshakes, frames, access lines).
THIRD_PARTY_LOGGERS = ("websockets", "websockets.client", "uvicorn", "uvicorn.access", "httpx", "httpcore", "asyncio")

_LEVELS = {"DEV": DEBUG, "PROD": WARNING, "DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING}

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(funcName)s: %(message)s"


class _ThirdPartyLogFilter(Filter):
    """Keeps every record from scribe, server and transcribe; library records only from INFO up."""
    def filter(self, record: LogRecord) -> bool:
        return record.name.startswith(PROJECT_PREFIXES) or record.levelno >= INFO


def _console_level() -> int:
    return _LEVELS.get(LOG_LEVEL, INFO)


def setup_logging(level: Optional[int] = None, log_path: Path = LOG_PATH) -> Path:
    """
    Send scribe logs to the console and to a per-run file under `log_path`.

    The console level comes from `level`, or from LOG_LEVEL (DEV, PROD or a
    level name) when not given. The session file keeps scribe's DEBUG lines
    and drops library chatter below INFO.

    Returns the path to the log file.
    """
    basicConfig(level=level if level is not None else _console_level(), format=_LOG_FORMAT)
    for name in THIRD_PARTY_LOGGERS:
        getLogger(name).setLevel(INFO)

    log_filename = log_path / f"scribe_{datetime.now():%Y%m%d_%H%M%S}.log"
    session_file = FileHandler(log_filename, encoding="utf-8")
    session_file.setLevel(DEBUG)
    session_file.setFormatter(Formatter(_LOG_FORMAT))
    session_file.addFilter(_ThirdPartyLogFilter())
    getLogger().addHandler(session_file)

    getLogger(__name__).info("[LOG] session log: %s", log_filename)
    return log_filename
