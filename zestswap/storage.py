"""Storage for in-flight executions and their terminal results."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar

M = TypeVar("M")
R = TypeVar("R")


class ExecutionStore(ABC, Generic[M, R]):
    """Active monitors (``M``) and history results (``R``), keyed by execution id."""

    @abstractmethod
    async def put_active(self, execution_id: str, monitor: M) -> None:
        ...

    @abstractmethod
    async def get_active(self, execution_id: str) -> Optional[M]:
        ...

    @abstractmethod
    async def pop_active(self, execution_id: str) -> Optional[M]:
        ...

    @abstractmethod
    async def list_active(self) -> List[M]:
        ...

    @abstractmethod
    async def put_history(self, execution_id: str, result: R) -> None:
        ...

    @abstractmethod
    async def get_history(self, execution_id: str) -> Optional[R]:
        ...

    @abstractmethod
    async def list_history(self) -> List[R]:
        ...

    @abstractmethod
    async def prune_history(self, max_age: float) -> int:
        """Drop history older than ``max_age`` seconds; returns the count removed."""


class InMemoryExecutionStore(ExecutionStore[M, R]):
    """Process-local store. History is FIFO-pruned to ``max_history`` entries."""

    def __init__(
        self,
        max_history: int = 1000,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.max_history = max_history
        self._clock = clock
        self._active: Dict[str, M] = {}
        self._history: "OrderedDict[str, Tuple[R, float]]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def put_active(self, execution_id: str, monitor: M) -> None:
        async with self._lock:
            self._active[execution_id] = monitor

    async def get_active(self, execution_id: str) -> Optional[M]:
        async with self._lock:
            return self._active.get(execution_id)

    async def pop_active(self, execution_id: str) -> Optional[M]:
        async with self._lock:
            return self._active.pop(execution_id, None)

    async def list_active(self) -> List[M]:
        async with self._lock:
            return list(self._active.values())

    async def put_history(self, execution_id: str, result: R) -> None:
        async with self._lock:
            self._history.pop(execution_id, None)
            self._history[execution_id] = (result, self._clock())
            while len(self._history) > self.max_history:
                self._history.popitem(last=False)

    async def get_history(self, execution_id: str) -> Optional[R]:
        async with self._lock:
            entry = self._history.get(execution_id)
            return entry[0] if entry else None

    async def list_history(self) -> List[R]:
        async with self._lock:
            return [result for result, _ in self._history.values()]

    async def prune_history(self, max_age: float) -> int:
        async with self._lock:
            cutoff = self._clock() - max_age
            stale = [k for k, (_, stored_at) in self._history.items() if stored_at < cutoff]
            for key in stale:
                del self._history[key]
            return len(stale)
