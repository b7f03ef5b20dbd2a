"""
Signer-level nonce coordinator.

Concurrent settlement runs may sign with the same buyer key. Nonce assignment
for that account is a race unless submissions serialize, so every run takes
the account's single asyncio.Lock around "fetch nonce, sign, send".
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List


class NonceCoordinator:
    def __init__(self) -> None:
        # map lowercase signer address -> asyncio.Lock
        self._locks: Dict[str, asyncio.Lock] = {}
        # guard for creating locks
        self._guard = asyncio.Lock()

    async def get_lock(self, account: str) -> asyncio.Lock:
        """Return the shared asyncio.Lock for a signer address (case-insensitive)."""
        key = account.lower()
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    @asynccontextmanager
    async def submission(self, account: str) -> AsyncIterator[None]:
        """Hold the signer's lock for the duration of one submission."""
        lock = await self.get_lock(account)
        async with lock:
            yield

    def accounts(self) -> List[str]:
        return list(self._locks)
