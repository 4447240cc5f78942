from __future__ import annotations

import time
import asyncio
import logging
from typing import Dict, List

import httpx

from .base import SessionBackend


logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    バックエンドのツールID一覧をTTL付きでキャッシュする。
    ツール無効化のたびに /experimental/tool/ids を叩かないため。
    """

    def __init__(self, backend: SessionBackend, ttl_sec: float = 300.0) -> None:
        self.backend = backend
        self.ttl_sec = ttl_sec
        self._ids: List[str] = []
        self._last_fetch: float = 0.0
        self._lock = asyncio.Lock()

    async def disabled_map(self) -> Dict[str, bool]:
        """{tool_id: False, ...}。一覧が取れないバックエンドなら空dict"""
        return {tool_id: False for tool_id in await self.tool_ids()}

    async def tool_ids(self) -> List[str]:
        if self._is_fresh():
            return list(self._ids)

        async with self._lock:
            if self._is_fresh():
                return list(self._ids)
            try:
                self._ids = await self.backend.tool_ids()
            except (httpx.HTTPError, ValueError) as e:
                # 古い一覧があればそれを使う。無ければガード文だけに頼る
                logger.warning(f"Failed to fetch tool ids: {e!r}")
            # 失敗した時刻も記録し、TTLの間は再取得しない
            self._last_fetch = time.time()
            return list(self._ids)

    def _is_fresh(self) -> bool:
        if self.ttl_sec <= 0 or self._last_fetch == 0.0:
            return False
        return (time.time() - self._last_fetch) < self.ttl_sec
