from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

import httpx

from .backends.base import SessionBackend
from .backends.supervisor import BackendSupervisor
from .backends.tool_registry import ToolRegistry
from .errors import (
    AssistantError,
    BackendRequestFailed,
    CollectionTimeout,
    InvalidRequest,
    PromptSubmissionTimeout,
    SessionCreationFailed,
)
from .tool_filter import ToolCallFilter, strip_tool_calls


logger = logging.getLogger(__name__)

# ツール無効化時にsystemへ足す指示
TOOL_GUARD = (
    "Tools are not available in this conversation. "
    "Answer directly in plain text and never emit tool or function call markup."
)

ROLE_LABELS = {
    "user": "User",
    "assistant": "Assistant",
    "tool": "Tool",
    "function": "Tool",
    "developer": "Developer",
}

# 差分コールバック: (kind, text)  kind は "text" か "reasoning"
DeltaCallback = Callable[[str, str], None]


@dataclass
class Completion:
    content: str = ""
    reasoning: str = ""
    error: Optional[Dict[str, Any]] = None
    # stopイベント無しで打ち切った
    truncated: bool = False


# ---- イベント経路の結果（タグ付き） ----


@dataclass
class Collected:
    completion: Completion


@dataclass
class NoEventData:
    """最初の差分が来なかった。エラーではなく、ポーリングへ切り替える合図"""


@dataclass
class TransportError:
    error: BaseException


EventOutcome = Union[Collected, NoEventData, TransportError]


# ---- 入力の正規化 ----


def normalize_content(content: Any) -> str:
    """
    OpenAIの content は 文字列 / [{"type": "text", "text": ...}, ...] / {"text": ...} のどれか。
    全部プレーンテキストにそろえる。
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [normalize_content(item) for item in content]
        return "\n".join(t for t in texts if t)
    if isinstance(content, dict):
        text = content.get("text")
        if isinstance(text, str):
            return text
        if "content" in content:
            return normalize_content(content.get("content"))
        return ""
    return str(content)


def build_parts(messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """
    system は改行でつないで1つにまとめ、それ以外は "User: ..." のようにラベル付きのpartにする。
    OpenCode には複数ターンの入力形が無いので、順番付きのテキストブロックとして渡す。
    """
    system_texts: List[str] = []
    parts: List[Dict[str, Any]] = []
    for message in messages:
        role = str(message.get("role") or "user")
        text = normalize_content(message.get("content"))
        if role == "system":
            if text:
                system_texts.append(text)
            continue
        if not text:
            continue
        label = ROLE_LABELS.get(role, role.capitalize())
        parts.append({"type": "text", "text": f"{label}: {text}"})
    return "\n".join(system_texts), parts


def _error_message(error: Any) -> str:
    if not isinstance(error, dict):
        return str(error)
    data = error.get("data") if isinstance(error.get("data"), dict) else {}
    return str(data.get("message") or error.get("message") or error.get("name") or "Unknown backend error")


def extract_assistant(messages: List[Dict[str, Any]]) -> Optional[Tuple[Completion, bool]]:
    """
    ポーリングで取ったメッセージ一覧を新しい方から見て、最初のassistantを取り出す。
    戻り値は (中身, 終わったか)。assistantが無ければNone。
    """
    for message in reversed(messages):
        info = message.get("info") or {}
        if info.get("role") != "assistant":
            continue

        text: List[str] = []
        reasoning: List[str] = []
        for part in message.get("parts") or []:
            if part.get("type") == "text" and part.get("text"):
                text.append(part["text"])
            elif part.get("type") == "reasoning" and part.get("text"):
                reasoning.append(part["text"])

        error = info.get("error") or None
        completion = Completion(content="".join(text), reasoning="".join(reasoning), error=error)
        finished = bool(info.get("finish") or (info.get("time") or {}).get("completed") or error)
        if not finished and (completion.content or completion.reasoning):
            # 終了マーカー無しで中身だけある: 完了扱いにするが打ち切りの可能性あり
            completion.truncated = True
            finished = True
        return completion, finished
    return None


class _Accumulator:
    """
    差分をkindごとに貯め、必要ならツール呼び出しを除いてコールバックへ流す。
    ポーリング経路ではスナップショットとの差分をここで作る。
    """

    def __init__(self, on_delta: Optional[DeltaCallback], filter_tools: bool) -> None:
        self.on_delta = on_delta
        self.filters: Dict[str, ToolCallFilter] = (
            {"text": ToolCallFilter(), "reasoning": ToolCallFilter()} if filter_tools else {}
        )
        self.buffers: Dict[str, str] = {"text": "", "reasoning": ""}
        self.error: Optional[Dict[str, Any]] = None
        self.received = False

    def push(self, kind: str, payload: str) -> None:
        if not payload:
            return
        self.received = True
        self.buffers[kind] += payload
        if self.on_delta is None:
            return
        f = self.filters.get(kind)
        visible = f.feed(payload) if f else payload
        if visible:
            self.on_delta(kind, visible)

    def sync(self, kind: str, snapshot: str) -> None:
        current = self.buffers[kind]
        if snapshot.startswith(current):
            self.push(kind, snapshot[len(current):])
        else:
            # 既に流した分は取り消せないので、最終結果だけ差し替える
            self.buffers[kind] = snapshot

    def completion(self, truncated: bool = False) -> Completion:
        return Completion(
            content=self.buffers["text"],
            reasoning=self.buffers["reasoning"],
            error=self.error,
            truncated=truncated,
        )


class SessionBridge:
    """
    1リクエスト = 1 session。
    session作成 -> prompt投入 -> イベント購読（ダメならポーリング）で結果を集める。
    """

    def __init__(
        self,
        backend: SessionBackend,
        supervisor: BackendSupervisor,
        tools: ToolRegistry,
        request_timeout: float = 180.0,
        disable_tools: bool = True,
        delete_sessions: bool = True,
        first_delta_timeout: float = 4.0,
        idle_timeout: float = 8.0,
        poll_interval: float = 0.5,
    ) -> None:
        self.backend = backend
        self.supervisor = supervisor
        self.tools = tools
        self.request_timeout = request_timeout
        self.disable_tools = disable_tools
        self.delete_sessions = delete_sessions
        self.first_delta_timeout = first_delta_timeout
        self.idle_timeout = idle_timeout
        self.poll_interval = poll_interval

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: Tuple[str, str],
        on_delta: Optional[DeltaCallback] = None,
    ) -> Completion:
        system, parts = build_parts(messages)
        if not parts:
            raise InvalidRequest("No user message provided")

        # 毎回バックエンドの生存確認（落ちていれば起動し直す）
        await self.supervisor.ensure()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.request_timeout
        session_id = await self._create_session()
        logger.debug(f"Session {session_id} created")

        try:
            completion = await self._run(session_id, system, parts, model, on_delta, deadline)
        except (Exception, asyncio.CancelledError):
            # タイムアウトや切断で見捨てるsessionは止めておく（できる範囲で）
            await self._abort(session_id)
            raise
        finally:
            if self.delete_sessions:
                await self._delete(session_id)

        if self.disable_tools:
            completion.content = strip_tool_calls(completion.content)
            completion.reasoning = strip_tool_calls(completion.reasoning)

        if completion.error and not completion.content and not completion.reasoning:
            detail = completion.error if isinstance(completion.error, dict) else None
            raise AssistantError(_error_message(completion.error), detail=detail)
        if completion.error:
            logger.warning(f"Backend reported an error after partial output: {_error_message(completion.error)}")
        if completion.truncated:
            logger.warning(f"Session {session_id} finished without a stop marker, response may be truncated")
        return completion

    # ---- 内部処理 ----

    async def _create_session(self) -> str:
        try:
            session_id = await self.backend.create_session()
        except httpx.HTTPError as e:
            raise SessionCreationFailed(f"Failed to establish OpenCode session: {e!r}") from e
        if not session_id:
            raise SessionCreationFailed("Failed to establish OpenCode session")
        return session_id

    async def _run(
        self,
        session_id: str,
        system: str,
        parts: List[Dict[str, Any]],
        model: Tuple[str, str],
        on_delta: Optional[DeltaCallback],
        deadline: float,
    ) -> Completion:
        tools: Optional[Dict[str, bool]] = None
        if self.disable_tools:
            system = f"{system}\n\n{TOOL_GUARD}" if system else TOOL_GUARD
            tools = await self.tools.disabled_map() or None

        acc = _Accumulator(on_delta, filter_tools=self.disable_tools)
        model_ref = {"providerID": model[0], "modelID": model[1]}

        async with AsyncExitStack() as stack:
            outcome: Optional[EventOutcome] = None
            events: Optional[AsyncIterator[Dict[str, Any]]] = None
            # 先に購読してからpromptを投げる（最初の差分を取りこぼさない）
            try:
                events = await stack.enter_async_context(self.backend.subscribe_events())
            except httpx.HTTPError as e:
                outcome = TransportError(e)

            prompt_task = asyncio.create_task(
                self._submit(session_id, model_ref, system, parts, tools, deadline)
            )
            try:
                if events is not None:
                    outcome = await self._collect_from_events(session_id, events, acc, deadline)

                if isinstance(outcome, Collected):
                    return outcome.completion
                if isinstance(outcome, NoEventData):
                    logger.info(f"No event data within {self.first_delta_timeout:.0f}s, falling back to polling")
                elif isinstance(outcome, TransportError):
                    logger.warning(f"Event feed failed ({outcome.error!r}), falling back to polling")
                return await self._collect_by_polling(session_id, acc, deadline, prompt_task)
            finally:
                if not prompt_task.done():
                    prompt_task.cancel()
                    await asyncio.wait({prompt_task})
                if not prompt_task.cancelled():
                    # 取り出しておかないと "exception was never retrieved" になる
                    prompt_task.exception()

    async def _submit(
        self,
        session_id: str,
        model: Dict[str, str],
        system: str,
        parts: List[Dict[str, Any]],
        tools: Optional[Dict[str, bool]],
        deadline: float,
    ) -> Dict[str, Any]:
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(
                self.backend.prompt(session_id, model, system, parts, tools),
                timeout=max(remaining, 0.0),
            )
        except asyncio.TimeoutError as e:
            raise PromptSubmissionTimeout(f"Prompt submission timed out after {self.request_timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise BackendRequestFailed(f"Prompt submission failed: {e!r}") from e

    async def _collect_from_events(
        self,
        session_id: str,
        events: AsyncIterator[Dict[str, Any]],
        acc: _Accumulator,
        deadline: float,
    ) -> EventOutcome:
        """
        タイマーは3つ。
        - 全体の締め切り: 超えたら失敗
        - 最初の差分（first_delta_timeout）: 来なければ NoEventData
        - 無通信（idle_timeout, 差分ごとにリセット）: 1つでも差分があればそこまでを結果にする
        """
        loop = asyncio.get_running_loop()
        first_delta_deadline = loop.time() + self.first_delta_timeout
        last_delta_at = 0.0
        iterator = events.__aiter__()

        while True:
            now = loop.time()
            if acc.received:
                wait_until = min(deadline, last_delta_at + self.idle_timeout)
            else:
                wait_until = min(deadline, first_delta_deadline)
            # どのタイマーで待っているか（タイマーは少し早く起きることがあるので時刻で比べない）
            overall = wait_until >= deadline

            try:
                event = await asyncio.wait_for(iterator.__anext__(), timeout=max(wait_until - now, 0.0))
            except asyncio.TimeoutError:
                if overall:
                    raise CollectionTimeout(f"No response within {self.request_timeout:.0f}s")
                if not acc.received:
                    return NoEventData()
                return Collected(acc.completion(truncated=True))
            except StopAsyncIteration:
                return TransportError(ConnectionError("event stream closed"))
            except httpx.HTTPError as e:
                return TransportError(e)

            etype = event.get("type")
            props = event.get("properties") or {}
            logger.debug(f"Event {etype}")

            if etype == "message.part.updated":
                part = props.get("part") or {}
                if part.get("sessionID") != session_id:
                    continue
                delta = props.get("delta")
                if delta and part.get("type") in ("text", "reasoning"):
                    acc.push(part["type"], delta)
                    last_delta_at = loop.time()

            elif etype == "message.updated":
                info = props.get("info") or {}
                if info.get("sessionID") != session_id or info.get("role") == "user":
                    continue
                if info.get("error"):
                    acc.error = info["error"]
                if info.get("finish") == "stop" or info.get("error"):
                    return Collected(acc.completion())

            elif etype == "session.error":
                if props.get("sessionID") == session_id and props.get("error"):
                    acc.error = props["error"]
                    return Collected(acc.completion())

    async def _collect_by_polling(
        self,
        session_id: str,
        acc: _Accumulator,
        deadline: float,
        prompt_task: "asyncio.Task[Dict[str, Any]]",
    ) -> Completion:
        loop = asyncio.get_running_loop()
        while True:
            # promptが失敗済みなら待っても無駄
            if prompt_task.done() and not prompt_task.cancelled():
                error = prompt_task.exception()
                if error is not None and not acc.received:
                    raise error

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise CollectionTimeout(f"No response within {self.request_timeout:.0f}s")
            try:
                messages = await asyncio.wait_for(self.backend.list_messages(session_id), timeout=remaining)
            except asyncio.TimeoutError as e:
                raise CollectionTimeout(f"No response within {self.request_timeout:.0f}s") from e
            except httpx.HTTPError as e:
                logger.debug(f"Polling session {session_id} failed: {e!r}")
                messages = []

            snapshot = extract_assistant(messages)
            if snapshot is not None:
                completion, finished = snapshot
                acc.sync("reasoning", completion.reasoning)
                acc.sync("text", completion.content)
                if completion.error:
                    acc.error = completion.error
                if finished:
                    return acc.completion(truncated=completion.truncated)

            await asyncio.sleep(min(self.poll_interval, max(deadline - loop.time(), 0.0)))

    async def _abort(self, session_id: str) -> None:
        try:
            await asyncio.wait_for(self.backend.abort_session(session_id), timeout=5.0)
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.debug(f"Abort of session {session_id} failed: {e!r}")

    async def _delete(self, session_id: str) -> None:
        try:
            await asyncio.wait_for(self.backend.delete_session(session_id), timeout=5.0)
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.debug(f"Delete of session {session_id} failed: {e!r}")
