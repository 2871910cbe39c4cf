# -*- coding: utf-8 -*-
"""
Key pool for Gemini API keys.

Holds the ordered credential list, each key's status and the round-robin
cursor. Keys come from the user's saved list when there is one, otherwise
from the server environment. A key marked invalid stays invalid until the
pool is rebuilt.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional

from config import get_gemini_keys_from_env, normalize_keys

logger = logging.getLogger(__name__)


class KeyStatus(str, Enum):
    ACTIVE = "active"
    INVALID = "invalid"


class KeySource(str, Enum):
    USER = "user"
    SYSTEM = "system"


def mask_key(key: str) -> str:
    """Short printable form of a key"""
    if not key:
        return "?"
    if len(key) > 12:
        return f"{key[:4]}...{key[-4:]}"
    return f"...{key[-3:]}"


@dataclass
class Credential:
    """One API key and its eligibility"""
    key: str
    status: KeyStatus = KeyStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == KeyStatus.ACTIVE

    @property
    def suffix(self) -> str:
        return self.key[-6:] if self.key else "?"

    def to_dict(self) -> dict:
        return {
            "masked": mask_key(self.key),
            "status": self.status.value,
        }


class KeyPoolManager:
    """
    Round-robin selection over the active keys.

    Usage:
        pool = KeyPoolManager(store=UserKeyStore())
        cred = pool.next_candidate()
        ...
        pool.mark_invalid(cred.key)

    next_candidate() and mark_invalid() take the lock, so the pool can be
    shared by concurrent requests (event-loop tasks or threads).
    """

    def __init__(self, store=None, system_keys_loader: Callable[[], List[str]] = None):
        self._lock = threading.RLock()
        self._store = store
        self._system_keys_loader = system_keys_loader or get_gemini_keys_from_env
        # Used only when there is no store
        self._user_keys: List[str] = []

        self._credentials: List[Credential] = []
        self._cursor = 0
        self.source = KeySource.SYSTEM

        self.initialize()

    # ------------------------------------------------------------------
    # Building the pool
    # ------------------------------------------------------------------

    def initialize(self):
        """
        Rebuild the pool from scratch.

        Uses the persisted user list; if that is empty the system
        (environment) keys are used instead. All keys start active and the
        cursor goes back to the first one.
        """
        keys = normalize_keys(self.get_user_credentials())

        if keys:
            source = KeySource.USER
        else:
            source = KeySource.SYSTEM
            keys = normalize_keys(self._system_keys_loader())

        with self._lock:
            self._credentials = [Credential(key=k) for k in keys]
            self._cursor = 0
            self.source = source

        logger.info(f"[KeyPool] Initialized with {len(keys)} {source.value} key(s)")

    def set_user_credentials(self, keys: Iterable[str]):
        """Persist the trimmed, non-empty keys as the user list, then rebuild"""
        cleaned = [k.strip() for k in keys if k and k.strip()]
        if self._store is not None:
            self._store.save(cleaned)
        else:
            self._user_keys = cleaned
        self.initialize()

    def get_user_credentials(self) -> List[str]:
        """The persisted user key list (empty if none)"""
        if self._store is not None:
            return self._store.load()
        return list(self._user_keys)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def next_candidate(self, exclude: Optional[Iterable[str]] = None) -> Optional[Credential]:
        """
        Next active key in rotation order, advancing the cursor past it.

        Keys in exclude are skipped without being consumed. Returns None when
        no eligible active key is left. Never returns an invalid key.
        """
        excluded = set(exclude or ())
        with self._lock:
            total = len(self._credentials)
            for offset in range(total):
                idx = (self._cursor + offset) % total
                cred = self._credentials[idx]
                if cred.is_active and cred.key not in excluded:
                    self._cursor = (idx + 1) % total
                    return cred
            return None

    def mark_invalid(self, key: str) -> bool:
        """
        Permanently disable a key for the life of this pool.

        Idempotent: returns True only on the active -> invalid transition.
        """
        with self._lock:
            for cred in self._credentials:
                if cred.key == key:
                    if not cred.is_active:
                        return False
                    cred.status = KeyStatus.INVALID
                    active = sum(1 for c in self._credentials if c.is_active)
                    logger.warning(
                        f"[KeyPool] Key ...{cred.suffix} marked invalid "
                        f"({active}/{len(self._credentials)} still active)"
                    )
                    return True
        return False

    def is_active(self, key: str) -> bool:
        with self._lock:
            return any(c.key == key and c.is_active for c in self._credentials)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def total_count(self) -> int:
        with self._lock:
            return len(self._credentials)

    @property
    def active_count(self) -> int:
        with self._lock:
            return sum(1 for c in self._credentials if c.is_active)

    @property
    def is_user_supplied(self) -> bool:
        return self.source == KeySource.USER

    def credentials(self) -> List[Credential]:
        """Snapshot copy of the pool in list order"""
        with self._lock:
            return [Credential(key=c.key, status=c.status) for c in self._credentials]

    def get_status(self) -> dict:
        """Pool summary for the API (keys masked)"""
        with self._lock:
            total = len(self._credentials)
            active = sum(1 for c in self._credentials if c.is_active)
            return {
                "source": self.source.value,
                "total": total,
                "active": active,
                "invalid": total - active,
                "configured": total > 0,
                "keys": [c.to_dict() for c in self._credentials],
            }
