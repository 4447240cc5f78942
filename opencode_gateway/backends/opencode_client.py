from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager

# 型ヒント
from typing import Any, AsyncIterator, Dict, List, Optional

# HTTPクライアント（FastAPIの外側でHTTPリクエストを投げる）
import httpx

# 自分で定義したインターフェース
from .base import SessionBackend


logger = logging.getLogger(__name__)


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """
    SSE（text/event-stream）の data: 行をJSONとして読み、dictをyieldする。
    複数行dataは空行で区切られるまで連結する。壊れたJSONは読み飛ばす。
    """
    buffer: List[str] = []
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip())
            continue
        if line.strip() or not buffer:
            # event: / id: / コメント行は使わない
            continue

        data = "\n".join(buffer)
        buffer = []
        try:
            event = json.loads(data)
        except ValueError:
            logger.debug(f"Skipping malformed event: {data[:200]}")
            continue
        if isinstance(event, dict):
            yield event


class OpenCodeBackend(SessionBackend):
    """
    OpenCode（opencode serve）のHTTP APIを叩くクライアント。
    gatewayが扱うのは session / message / event / providers だけ。
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient):
        # rstrip("/") は末尾スラッシュを消して、URL連結ミスを防ぐ
        self.base_url = base_url.rstrip("/")
        # clientはOrchestratorが持ち、閉じるのもOrchestrator
        self._client = client

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def create_session(self) -> Optional[str]:
        r = await self._client.post(self._url("/session"), json={})
        r.raise_for_status()
        data = r.json()
        if isinstance(data, dict):
            return data.get("id") or None
        return None

    async def delete_session(self, session_id: str) -> None:
        r = await self._client.delete(self._url(f"/session/{session_id}"))
        r.raise_for_status()

    async def abort_session(self, session_id: str) -> None:
        r = await self._client.post(self._url(f"/session/{session_id}/abort"))
        r.raise_for_status()

    async def prompt(
        self,
        session_id: str,
        model: Dict[str, str],
        system: str,
        parts: List[Dict[str, Any]],
        tools: Optional[Dict[str, bool]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": model, "parts": parts}
        if system:
            body["system"] = system
        if tools:
            body["tools"] = tools

        # このPOSTは生成が終わるまで返ってこない
        r = await self._client.post(self._url(f"/session/{session_id}/message"), json=body)
        r.raise_for_status()
        try:
            data = r.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @asynccontextmanager
    async def subscribe_events(self) -> AsyncIterator[AsyncIterator[Dict[str, Any]]]:
        # client.stream(...) はレスポンスをチャンク単位で受け取れる
        async with self._client.stream("GET", self._url("/event")) as r:
            # HTTPエラー（4xx/5xx）なら例外にする
            r.raise_for_status()
            yield iter_sse_events(r)

    async def list_messages(self, session_id: str) -> List[Dict[str, Any]]:
        r = await self._client.get(self._url(f"/session/{session_id}/message"))
        r.raise_for_status()
        data = r.json()
        return data if isinstance(data, list) else []

    async def tool_ids(self) -> List[str]:
        r = await self._client.get(self._url("/experimental/tool/ids"))
        r.raise_for_status()
        data = r.json()
        return [t for t in data if isinstance(t, str)] if isinstance(data, list) else []

    async def providers(self) -> Any:
        r = await self._client.get(self._url("/config/providers"))
        r.raise_for_status()
        return r.json()
