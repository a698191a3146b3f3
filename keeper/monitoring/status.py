"""
In-memory status board: the latest status snapshot of every keeper loop.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict


class StatusBoard:
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def update(self, loop: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            self._data[loop] = payload

    async def snapshot(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return dict(self._data)
