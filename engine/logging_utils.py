import json
import logging
import os

from engine.paths import ensure_dir

LOG_FILENAME = "mediaflow.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, json.dumps(payload, sort_keys=True, default=str))
    except Exception as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")


def setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILENAME)
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return log_path
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)
    return log_path
