from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from .backends.base import SessionBackend
from .backends.model_registry import ModelRegistry, parse_model
from .backends.opencode_client import OpenCodeBackend
from .backends.supervisor import BackendState, BackendSupervisor
from .backends.tool_registry import ToolRegistry
from .bridge import Completion, SessionBridge, normalize_content
from .config import GatewayConfig
from .errors import GatewayError, InvalidRequest
from .serializer import RequestSerializer
from .translator import (
    DONE,
    build_chunk,
    build_completion,
    build_final_chunk,
    encode_sse,
    new_completion_id,
)


logger = logging.getLogger(__name__)


class Orchestrator:
    """
    gateway全体で1つだけ作る。キュー、バックエンドURLごとのSupervisor、bridgeを持つ。
    FastAPIのハンドラはこれの complete_chat / list_models だけを呼ぶ。
    """

    def __init__(
        self,
        config: GatewayConfig,
        backend: Optional[SessionBackend] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config
        # バックエンドAPIとヘルスチェックで共用。readタイムアウトは無し（締め切りは呼び出し側で管理する）
        self.http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=5.0))
        self._owns_client = http_client is None
        self.backend = backend or OpenCodeBackend(config.backend_url, client=self.http_client)

        self.serializer = RequestSerializer(cooldown=config.queue_cooldown)
        self._supervisors: Dict[str, BackendSupervisor] = {}
        self.models = ModelRegistry(self.backend, ttl_sec=config.model_cache_ttl)
        self.tools = ToolRegistry(self.backend, ttl_sec=config.tool_cache_ttl)
        self.bridge = SessionBridge(
            self.backend,
            self.supervisor_for(config.backend_url),
            self.tools,
            request_timeout=config.request_timeout,
            disable_tools=config.disable_tools,
            delete_sessions=config.delete_sessions,
        )

    def supervisor_for(self, url: str) -> BackendSupervisor:
        """URLごとに1つ。初回に作る"""
        url = url.rstrip("/")
        if url not in self._supervisors:
            self._supervisors[url] = BackendSupervisor(self.config, self.http_client, BackendState(url=url))
        return self._supervisors[url]

    # ---- ライフサイクル ----

    async def startup(self) -> None:
        # 起動時に一度立ち上げておく。失敗しても次のリクエストでやり直すので落とさない
        try:
            await self.supervisor_for(self.config.backend_url).ensure()
        except GatewayError as e:
            logger.warning(f"Backend warmup failed (ignored): {e}")

    async def shutdown(self) -> None:
        await self.serializer.close()
        for supervisor in self._supervisors.values():
            await supervisor.stop()
        if self._owns_client:
            await self.http_client.aclose()

    # ---- 公開API ----

    async def list_models(self) -> Dict[str, Any]:
        return {"object": "list", "data": await self.models.list_models()}

    async def complete_chat(self, request: Dict[str, Any]) -> Union[Dict[str, Any], AsyncIterator[str]]:
        """
        stream=false なら chat.completion のdict、
        stream=true なら SSE文字列を順に返す非同期イテレータ。
        """
        messages = request.get("messages")
        if not isinstance(messages, list) or not messages or not all(isinstance(m, dict) for m in messages):
            raise InvalidRequest("messages array is required")

        provider_id, model_id = parse_model(request.get("model"), self.config.default_model)
        model_name = f"{provider_id}/{model_id}"
        stream = bool(request.get("stream", False))

        preview = normalize_content(messages[-1].get("content"))[:30]
        logger.info(f'Input: "{preview}..." | Model: {model_name} | Stream: {stream}')

        if stream:
            return await self._open_stream(messages, (provider_id, model_id), model_name)

        completion: Completion = await self.serializer.lock(
            lambda: self.bridge.complete(messages, (provider_id, model_id)),
            self.config.task_timeout,
        )
        return build_completion(
            new_completion_id(),
            model_name,
            completion.content,
            completion.reasoning,
            truncated=completion.truncated,
        )

    # ---- ストリーミング ----

    async def _open_stream(self, messages: List[Dict[str, Any]], model: Any, model_name: str) -> AsyncIterator[str]:
        """
        キューの処理は別タスクで走らせ、差分はasyncio.Queue経由で受け取る。
        最初のチャンクが出る前に失敗したら、ここで例外にしてHTTPエラーで返せるようにする。
        """
        completion_id = new_completion_id()
        chunks: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

        def on_delta(kind: str, text: str) -> None:
            chunks.put_nowait(encode_sse(build_chunk(completion_id, model_name, kind, text)))

        task = asyncio.ensure_future(
            self.serializer.lock(
                lambda: self.bridge.complete(messages, model, on_delta=on_delta),
                self.config.task_timeout,
            )
        )
        # 処理が終わったら終端の合図（差分は同期で積まれるので、必ずその後ろに来る）
        task.add_done_callback(lambda _: chunks.put_nowait(None))

        first = await chunks.get()
        if first is None:
            # まだ何も送っていない: 失敗ならここで例外を上げる（HTTPエラーで返せる）
            task.result()
        return self._finish_stream(first, chunks, task, completion_id, model_name)

    async def _finish_stream(
        self,
        first: Optional[str],
        chunks: "asyncio.Queue[Optional[str]]",
        task: "asyncio.Future[Completion]",
        completion_id: str,
        model_name: str,
    ) -> AsyncIterator[str]:
        if first is not None:
            yield first
            while True:
                item = await chunks.get()
                if item is None:
                    break
                yield item

        error: Optional[Dict[str, Any]] = None
        truncated = False
        try:
            truncated = task.result().truncated
        except GatewayError as e:
            # ヘッダは送信済みなので、最後のチャンクで終わらせる
            logger.error(f"Stream failed after headers were sent: {e}")
            error = e.to_dict()["error"]
        except Exception as e:
            logger.exception("Unexpected error while streaming")
            error = {"message": str(e), "type": "proxy_error"}

        yield encode_sse(build_final_chunk(completion_id, model_name, truncated=truncated, error=error))
        yield DONE
