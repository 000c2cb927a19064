from __future__ import annotations

import logging
import threading
from typing import Optional, Sequence, Tuple

from .gemini_client import redact_api_key

logger = logging.getLogger(__name__)

PRIMARY = 0
BACKUP = 1


class CredentialSet:
    """Primary/backup API keys with one shared, lock-guarded active index.

    When several workers fail at once only the first failure that was observed on the
    primary key flips the index; later reports for the same key are no-ops.
    """

    def __init__(self, keys: Sequence[str]):
        cleaned = tuple(key.strip() for key in keys if key and key.strip())
        if len(cleaned) > 2:
            raise ValueError("At most two API keys (primary and backup) are supported.")
        self._keys: Tuple[str, ...] = cleaned
        self._active = PRIMARY
        self._lock = threading.Lock()
        self.switch_count = 0

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def has_backup(self) -> bool:
        return len(self._keys) > 1

    @property
    def active_index(self) -> int:
        with self._lock:
            return self._active

    def acquire(self) -> Tuple[Optional[int], Optional[str]]:
        """Return ``(index, key)`` for the next attempt, or ``(None, None)`` when no key exists."""
        with self._lock:
            if not self._keys:
                return None, None
            return self._active, self._keys[self._active]

    def report_failure(self, used_index: Optional[int]) -> bool:
        """Switch to the backup key. Returns True only for the call that performed the switch."""
        with self._lock:
            if used_index != PRIMARY or self._active != PRIMARY or len(self._keys) < 2:
                return False
            self._active = BACKUP
            self.switch_count += 1
        logger.info("Switching to backup API key %s", redact_api_key(self._keys[BACKUP]))
        return True

    def report_success(self, used_index: Optional[int]) -> None:
        with self._lock:
            if self._active == PRIMARY or len(self._keys) < 2:
                return
            self._active = PRIMARY
        logger.info("Resetting to primary API key after a clean response on key %s", used_index)

    def current_key_redacted(self) -> str:
        _, key = self.acquire()
        return redact_api_key(key) if key else "No key"
