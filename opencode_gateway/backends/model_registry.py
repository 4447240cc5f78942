# opencode_gateway/backends/model_registry.py

from __future__ import annotations

import time
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .base import SessionBackend


logger = logging.getLogger(__name__)

# 指定が「model」だけのときに補うプロバイダ
DEFAULT_PROVIDER = "opencode"

# バックエンドが落ちていて一覧が取れないときに返す最低限のモデル
FALLBACK_MODELS: List[Dict[str, Any]] = [
    {"id": "opencode/kimi-k2.5-free", "object": "model", "name": "Kimi K2.5 (Free)", "owned_by": "opencode"},
    {"id": "opencode/glm-4.7-free", "object": "model", "name": "GLM 4.7 (Free)", "owned_by": "opencode"},
    {"id": "opencode/minimax-m2.1-free", "object": "model", "name": "MiniMax M2.1 (Free)", "owned_by": "opencode"},
]


def parse_model(requested: Optional[str], default_model: str) -> Tuple[str, str]:
    """
    "provider/model" を (providerID, modelID) に分ける。
    "/" が無ければ provider は opencode 扱い。空なら default_model を使う。
    """
    value = (requested or "").strip() or default_model
    provider_id, sep, model_id = value.partition("/")
    if not sep or not model_id:
        return DEFAULT_PROVIDER, provider_id
    return provider_id, model_id


def flatten_providers(raw: Any) -> List[Dict[str, Any]]:
    """
    /config/providers の結果をOpenAIの /v1/models 形式に平らにする。
    providers は配列の場合と {id: info} の辞書の場合がある。
    """
    if isinstance(raw, dict) and "providers" in raw:
        raw = raw.get("providers")

    if isinstance(raw, dict):
        providers = [dict(info or {}, id=pid) for pid, info in raw.items()]
    elif isinstance(raw, list):
        providers = [p for p in raw if isinstance(p, dict)]
    else:
        providers = []

    models: List[Dict[str, Any]] = []
    for provider in providers:
        pid = provider.get("id")
        for model_id, model_data in (provider.get("models") or {}).items():
            name = model_data.get("name") if isinstance(model_data, dict) else None
            models.append(
                {
                    "id": f"{pid}/{model_id}",
                    "object": "model",
                    "name": name or model_id,
                    "owned_by": pid,
                }
            )
    return models


class ModelRegistry:
    """
    OpenCodeの /config/providers を見て、
    - OpenAI形式のモデル一覧をキャッシュ
    - 取れないときは前回の一覧（無ければ固定の一覧）を返す
    ための小さなヘルパ。
    """

    def __init__(self, backend: SessionBackend, ttl_sec: float = 60.0) -> None:
        self.backend = backend
        # モデル一覧キャッシュのTTL（秒）
        self.ttl_sec = ttl_sec

        # キャッシュ本体
        self._models: List[Dict[str, Any]] = []
        self._last_fetch: float = 0.0

        # 多重fetch防止（同時に何リクエストも来た時に /config/providers を連打しない）
        self._lock = asyncio.Lock()

    # ---- 公開API ----

    async def list_models(self) -> List[Dict[str, Any]]:
        await self.refresh(force=False)
        if self._models:
            return list(self._models)
        return [dict(m) for m in FALLBACK_MODELS]

    async def refresh(self, force: bool) -> None:
        """
        TTLが切れたら取り直す。force=True の場合はTTL無視で必ず更新を試みる。
        """
        # 既に新鮮なら何もしない（forceでなければ）
        if (not force) and self._is_fresh():
            return

        async with self._lock:
            # lock待ちの間に他が更新してる可能性があるので再チェック
            if (not force) and self._is_fresh():
                return
            try:
                models = flatten_providers(await self.backend.providers())
            except (httpx.HTTPError, ValueError) as e:
                # 失敗しても落とさない（キャッシュがあるならそれを使い続ける）
                logger.warning(f"Failed to fetch providers from backend: {e!r}")
                return
            if models:
                self._models = models
                self._last_fetch = time.time()

    # ---- 内部処理 ----

    def _is_fresh(self) -> bool:
        if self.ttl_sec <= 0 or not self._models:
            return False
        return (time.time() - self._last_fetch) < self.ttl_sec
