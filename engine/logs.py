import logging
import os

from engine.json_utils import safe_json_dumps
from engine.paths import ensure_dir

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_FILENAME = "worker.log"


def setup_logging(log_dir, level="INFO"):
    root = logging.getLogger("")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    has_console = any(
        type(handler) is logging.StreamHandler for handler in root.handlers
    )
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if not log_dir:
        return None
    ensure_dir(log_dir)
    log_path = os.path.join(log_dir, LOG_FILENAME)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return log_path
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_path


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, safe_json_dumps(payload, sort_keys=True))
    except Exception as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")
