"""In-memory transaction history store."""

import asyncio
import time
from typing import Any, Dict, List, Optional

from .base import HistoryStore


class InMemoryHistoryStore(HistoryStore):
    """Keeps history records in process memory. Useful for the CLI and tests."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: Dict[str, Any]) -> None:
        record_id = record.get("id")
        if not record_id:
            raise ValueError("History record requires an id")
        async with self._lock:
            self._records[record_id] = {**record, "updated_at": time.time()}

    async def update_status(self, record_id: str, status: str, fields: Optional[Dict[str, Any]] = None) -> None:
        async with self._lock:
            record = self._records.setdefault(record_id, {"id": record_id})
            record.update(fields or {})
            record["status"] = status
            record["updated_at"] = time.time()

    async def update_hash(self, record_id: str, tx_hash: str, block_number: Optional[int] = None) -> None:
        async with self._lock:
            record = self._records.setdefault(record_id, {"id": record_id})
            record["tx_hash"] = tx_hash
            if block_number is not None:
                record["block_number"] = block_number
            record["updated_at"] = time.time()

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._records.get(record_id)
            return dict(record) if record else None

    async def list_records(self) -> List[Dict[str, Any]]:
        async with self._lock:
            return [dict(r) for r in self._records.values()]
