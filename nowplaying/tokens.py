"""
Persistent store of long-lived Spotify refresh tokens, keyed by user id.

Tokens live in a single JSON file. Writes are atomic (temp file + rename)
so a crash mid-write never corrupts the store.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("nowplaying")


class TokenStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            logger.error(f"Token store {self.path} is corrupt, ignoring it")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        d = self.path.parent
        d.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def get(self, user_id: str) -> Optional[str]:
        return self._load().get(user_id)

    def set(self, user_id: str, refresh_token: str) -> None:
        data = self._load()
        data[user_id] = refresh_token
        self._save(data)

    def delete(self, user_id: str) -> None:
        data = self._load()
        if data.pop(user_id, None) is not None:
            self._save(data)
