import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from deploy.config import settings

EXTRA_FIELDS = (
    "operation", "step", "slot", "port", "unit", "artifact",
    "attempts", "elapsed_s",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "event": record.getMessage(),
            "module": record.module,
        }
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def setup_logging(log_file: str | None = None, level: str | None = None) -> None:
    """Human-readable lines on stdout, JSON lines in the deploy log file."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    root.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    stdout_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    )
    root.addHandler(stdout_handler)

    target = log_file if log_file is not None else settings.LOG_FILE
    if target:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    # urllib3 logs every health poll connection attempt
    logging.getLogger("urllib3").setLevel(logging.WARNING)
