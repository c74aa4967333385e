"""Per-key asyncio locks.

Message appends are serialised per thread and read-cursor moves per
(thread, user); unrelated keys never wait on each other.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable


class KeyedLocks:
	def __init__(self) -> None:
		self._locks: Dict[Hashable, asyncio.Lock] = {}
		self._holders: Dict[Hashable, int] = {}

	@asynccontextmanager
	async def hold(self, key: Hashable) -> AsyncIterator[None]:
		lock = self._locks.get(key)
		if lock is None:
			lock = asyncio.Lock()
			self._locks[key] = lock
		self._holders[key] = self._holders.get(key, 0) + 1
		try:
			async with lock:
				yield
		finally:
			remaining = self._holders[key] - 1
			if remaining:
				self._holders[key] = remaining
			else:
				# Nobody holds or waits on the key any more.
				del self._holders[key]
				del self._locks[key]


# Shared by every service instance in the process.
thread_locks = KeyedLocks()
cursor_locks = KeyedLocks()
