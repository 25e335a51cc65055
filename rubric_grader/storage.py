"""
Storage Adapters
================
Two storage backends sit behind the persistence strategies:

- Local device storage: a string key -> string value store. Guest results,
  guest sessions and the privacy key live here, on this machine only.
- Remote record store: generic CRUD over rows addressed by id and filtered by
  columns such as rubric_id. Backed by Supabase.
"""
import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from rubric_grader.config import config
from rubric_grader.exceptions import RecordStoreError

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════
# LOCAL DEVICE STORAGE
# ══════════════════════════════════════════════════════════════

class LocalStorage:
    """String key/value storage on the local device."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str):
        raise NotImplementedError

    def remove(self, key: str):
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError


class JsonFileStorage(LocalStorage):
    """
    One JSON file per key inside a data directory.

    Each file stores {"key": ..., "value": ...} so keys() can report the
    original key even after it was made filesystem-safe.
    """

    def __init__(self, directory=None):
        self.directory = Path(directory or config.data_dir) / "local_storage"

    def _path(self, key: str) -> Path:
        safe_key = re.sub(r'[^A-Za-z0-9_.-]', '_', str(key))
        return self.directory / f"{safe_key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f).get("value")
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Unreadable local storage entry %s: %s", path.name, e)
            return None

    def set(self, key: str, value: str):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump({"key": key, "value": value}, f)
        os.replace(tmp_path, path)

    def remove(self, key: str):
        path = self._path(key)
        if path.exists():
            path.unlink()

    def keys(self) -> List[str]:
        if not self.directory.exists():
            return []
        found = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    found.append(json.load(f)["key"])
            except (OSError, ValueError, KeyError, TypeError):
                continue
        return found


# ══════════════════════════════════════════════════════════════
# REMOTE RECORD STORE
# ══════════════════════════════════════════════════════════════

class RecordStore:
    """Generic CRUD over opaque records in one remote table."""

    def select(self, order_by: Optional[str] = None, desc: bool = False,
               limit: Optional[int] = None, **filters) -> List[Dict]:
        raise NotImplementedError

    def upsert(self, record: Dict) -> Dict:
        raise NotImplementedError

    def delete(self, **filters):
        raise NotImplementedError


_supabase = None


def get_supabase():
    """Get or create the shared Supabase client."""
    global _supabase
    if _supabase is None:
        from supabase import create_client
        if not config.remote_enabled:
            raise RecordStoreError(
                "Supabase credentials not configured. Check SUPABASE_URL and SUPABASE_KEY in .env")
        _supabase = create_client(config.supabase_url, config.supabase_key)
    return _supabase


class SupabaseRecordStore(RecordStore):
    """Record store backed by one Supabase table."""

    def __init__(self, table: str, client=None):
        self.table = table
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def select(self, order_by=None, desc=False, limit=None, **filters):
        try:
            query = self.client.table(self.table).select('*')
            for column, value in filters.items():
                query = query.eq(column, value)
            if order_by:
                query = query.order(order_by, desc=desc)
            if limit:
                query = query.limit(limit)
            result = query.execute()
        except RecordStoreError:
            raise
        except Exception as e:
            raise RecordStoreError(f"Select from {self.table} failed: {e}") from e
        return list(result.data or [])

    def upsert(self, record):
        payload = {k: v for k, v in record.items() if v is not None}
        payload.setdefault("updated_at", datetime.now().isoformat())
        try:
            result = self.client.table(self.table).upsert(payload).execute()
        except RecordStoreError:
            raise
        except Exception as e:
            raise RecordStoreError(f"Upsert into {self.table} failed: {e}") from e
        if not result.data:
            raise RecordStoreError(f"Upsert into {self.table} returned no row")
        return result.data[0]

    def delete(self, **filters):
        if not filters:
            raise RecordStoreError("Refusing to delete without filters")
        try:
            query = self.client.table(self.table).delete()
            for column, value in filters.items():
                query = query.eq(column, value)
            query.execute()
        except RecordStoreError:
            raise
        except Exception as e:
            raise RecordStoreError(f"Delete from {self.table} failed: {e}") from e
