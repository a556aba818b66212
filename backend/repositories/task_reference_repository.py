import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger("photobook-orders")

TASKS_FILE = "UploadTasks.json"


class TaskReferenceRepository:
    """Task id -> {"reference", "file"} table shared with the transfer session."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    @property
    def path(self) -> Path:
        return self.directory / TASKS_FILE

    def fetch_all(self) -> Dict[int, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Upload tasks: could not read %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            return {}
        entries: Dict[int, Dict[str, Any]] = {}
        for key, value in raw.items():
            try:
                task_id = int(key)
            except (TypeError, ValueError):
                continue
            if isinstance(value, dict) and value.get("reference"):
                entries[task_id] = value
        return entries

    def save_all(self, entries: Dict[int, Dict[str, Any]]) -> None:
        if not entries:
            self.clear()
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        payload = {str(task_id): value for task_id, value in entries.items()}
        tmp_path.write_text(json.dumps(payload), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
