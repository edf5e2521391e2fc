import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional


class JsonFileStore:
    """
    Local JSON file holding the mirror state.

    Writes go to a temp file in the same directory and are moved into place,
    so an interrupted save leaves the previous state intact.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            # Corrupt cache: the next reconciliation refetches everything.
            return None
        return data if isinstance(data, dict) else None

    def save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".mirror-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
