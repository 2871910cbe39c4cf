# -*- coding: utf-8 -*-
"""
Persistence for the user-supplied Gemini key list.

The list is stored as a JSON array of strings under a fixed settings key.
Reads fail soft: a corrupted entry is cleared and treated as an empty list.
"""

import json
import logging
from typing import Callable, List, Optional

from models import get_db, get_setting, set_setting, delete_setting

logger = logging.getLogger(__name__)

STORAGE_KEY = "gemini_api_keys"


class UserKeyStore:
    """Reads and writes the persisted user key list"""

    def __init__(self, session_factory: Optional[Callable] = None, storage_key: str = STORAGE_KEY):
        self._session_factory = session_factory or get_db
        self.storage_key = storage_key

    def load(self) -> List[str]:
        with self._session_factory() as db:
            raw = get_setting(db, self.storage_key)
            if not raw:
                return []

            try:
                data = json.loads(raw)
                if not isinstance(data, list) or not all(isinstance(k, str) for k in data):
                    raise ValueError(f"expected a JSON array of strings, got {type(data).__name__}")
            except ValueError as e:
                # json.JSONDecodeError is a ValueError too
                logger.warning(f"[KeyStore] Discarding corrupted '{self.storage_key}' entry: {e}")
                delete_setting(db, self.storage_key)
                return []

            return data

    def save(self, keys: List[str]):
        """Persist keys; an empty list removes the entry"""
        with self._session_factory() as db:
            if keys:
                set_setting(db, self.storage_key, json.dumps(list(keys)))
            else:
                delete_setting(db, self.storage_key)
        logger.info(f"[KeyStore] Saved {len(keys)} user key(s)")


class MemoryKeyStore:
    """In-process store with the same interface, for tools and tests"""

    def __init__(self, keys: Optional[List[str]] = None):
        self._keys = list(keys or [])

    def load(self) -> List[str]:
        return list(self._keys)

    def save(self, keys: List[str]):
        self._keys = list(keys)
