from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from opencode_gateway.backends.base import SessionBackend
from opencode_gateway.config import GatewayConfig


def part_event(session_id: str, delta: str, kind: str = "text") -> Dict[str, Any]:
    return {
        "type": "message.part.updated",
        "properties": {"part": {"sessionID": session_id, "type": kind}, "delta": delta},
    }


def stop_event(session_id: str) -> Dict[str, Any]:
    return {
        "type": "message.updated",
        "properties": {"info": {"sessionID": session_id, "role": "assistant", "finish": "stop"}},
    }


def assistant_message(
    text: str = "",
    reasoning: str = "",
    finish: Optional[str] = "stop",
    error: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    parts = []
    if reasoning:
        parts.append({"type": "reasoning", "text": reasoning})
    if text:
        parts.append({"type": "text", "text": text})
    info: Dict[str, Any] = {"role": "assistant"}
    if finish:
        info["finish"] = finish
    if error:
        info["error"] = error
    return {"info": info, "parts": parts}


class FakeBackend(SessionBackend):
    """
    メモリ上のバックエンド。
    events の要素は dict（イベント）か float（その秒数だけ待つ）。使い切ったら黙り込む。
    """

    def __init__(
        self,
        events: Optional[List[Any]] = None,
        snapshots: Optional[List[List[Dict[str, Any]]]] = None,
        session_ids: Optional[List[Optional[str]]] = None,
        tool_list: Optional[List[str]] = None,
        subscribe_error: Optional[BaseException] = None,
        prompt_error: Optional[BaseException] = None,
        prompt_delay: float = 0.0,
    ) -> None:
        self.events = list(events or [])
        self.snapshots = list(snapshots or [])
        self.session_ids = list(session_ids or ["ses_1"])
        self.tool_list = list(tool_list or [])
        self.subscribe_error = subscribe_error
        self.prompt_error = prompt_error
        self.prompt_delay = prompt_delay

        self.prompts: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self.aborted: List[str] = []
        self.active = 0
        self.max_active = 0

    async def create_session(self) -> Optional[str]:
        session_id = self.session_ids.pop(0) if len(self.session_ids) > 1 else self.session_ids[0]
        if session_id:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        return session_id

    async def delete_session(self, session_id: str) -> None:
        self.deleted.append(session_id)
        self.active -= 1

    async def abort_session(self, session_id: str) -> None:
        self.aborted.append(session_id)

    async def prompt(self, session_id, model, system, parts, tools=None) -> Dict[str, Any]:
        self.prompts.append(
            {"session_id": session_id, "model": model, "system": system, "parts": parts, "tools": tools}
        )
        if self.prompt_delay:
            await asyncio.sleep(self.prompt_delay)
        if self.prompt_error is not None:
            raise self.prompt_error
        return {}

    @asynccontextmanager
    async def subscribe_events(self) -> AsyncIterator[AsyncIterator[Dict[str, Any]]]:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        yield self._stream()

    async def _stream(self) -> AsyncIterator[Dict[str, Any]]:
        for item in self.events:
            if isinstance(item, (int, float)):
                await asyncio.sleep(item)
                continue
            yield item
        await asyncio.Event().wait()

    async def list_messages(self, session_id: str) -> List[Dict[str, Any]]:
        if not self.snapshots:
            return []
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return self.snapshots[0]

    async def tool_ids(self) -> List[str]:
        return list(self.tool_list)

    async def providers(self) -> Any:
        return {"providers": []}


class FakeSupervisor:
    def __init__(self) -> None:
        self.calls = 0

    async def ensure(self) -> None:
        self.calls += 1


@pytest.fixture
def config() -> GatewayConfig:
    return GatewayConfig(
        request_timeout=2.0,
        startup_timeout=1.0,
        health_interval=0.01,
        queue_cooldown=0.0,
    )
