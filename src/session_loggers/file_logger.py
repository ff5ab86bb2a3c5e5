import json
import logging
import os
import re
from datetime import datetime, timezone

logger = logging.getLogger("flotilla.session_logger")

SESSIONS_DIR = os.path.join(os.path.dirname(__file__), "..", "..", "logs", "sessions")

UNSAFE_LABEL = re.compile(r"[^\w.-]+")


class FileSessionLogger:
    """Writes one JSONL file per agent run: a metadata record, then the output lines."""

    def __init__(self, sessions_dir: str = SESSIONS_DIR):
        self._sessions_dir = sessions_dir

    def save(self, output: str, metadata: dict, label: str) -> str | None:
        ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        filename = f"{ts}_{UNSAFE_LABEL.sub('_', label)}.jsonl"
        filepath = os.path.join(self._sessions_dir, filename)

        lines = output.splitlines()
        try:
            os.makedirs(self._sessions_dir, exist_ok=True)
            with open(filepath, "w") as f:
                f.write(json.dumps({"type": "_metadata", **metadata}) + "\n")
                for line in lines:
                    f.write(json.dumps({"type": "output", "line": line}) + "\n")
        except OSError as e:
            logger.error(f"Failed to save session log {filepath}: {e}", exc_info=True)
            return None

        logger.info(f"Session log saved: {filepath} ({len(lines)} lines)")
        return filepath
