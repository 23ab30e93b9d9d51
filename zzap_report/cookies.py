"""Persistence for the site session cookie set."""

import json
import os
import threading
from typing import List, Optional, Tuple

CookieSnapshot = Tuple[List[dict], int]


class InMemoryCookieStore:
    """Keeps the cookie snapshot on the instance. Used in tests and one-shot runs."""

    def __init__(self, cookies: Optional[List[dict]] = None, saved_at: Optional[int] = None):
        self._snapshot: Optional[CookieSnapshot] = None
        if cookies is not None:
            self._snapshot = (list(cookies), int(saved_at or 0))

    def load(self) -> Optional[CookieSnapshot]:
        if self._snapshot is None:
            return None
        cookies, saved_at = self._snapshot
        return [dict(c) for c in cookies], saved_at

    def save(self, cookies: List[dict], saved_at: int) -> None:
        self._snapshot = ([dict(c) for c in cookies], int(saved_at))


class FileCookieStore:
    """
    JSON file holding {"cookies": [...], "savedAt": <epoch ms>}.

    A missing or unreadable file reads as "no session".
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> Optional[CookieSnapshot]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            print(f"[CookieStore] Unreadable cookie file {self.path}: {str(e)[:100]}")
            return None

        cookies = data.get("cookies") if isinstance(data, dict) else None
        if not isinstance(cookies, list):
            return None
        try:
            saved_at = int(data.get("savedAt") or 0)
        except (TypeError, ValueError):
            saved_at = 0
        return cookies, saved_at

    def save(self, cookies: List[dict], saved_at: int) -> None:
        payload = json.dumps({"cookies": cookies, "savedAt": int(saved_at)}, ensure_ascii=False)
        directory = os.path.dirname(self.path)
        with self._lock:
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
