from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, Optional

# ストリーム終端の合図（OpenAI互換）
DONE = "data: [DONE]\n\n"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


def build_completion(
    completion_id: str,
    model: str,
    content: str,
    reasoning: Optional[str] = None,
    truncated: bool = False,
) -> Dict[str, Any]:
    """非ストリーム時の chat.completion を組み立てる"""
    message: Dict[str, Any] = {
        "role": "assistant",
        "content": content,
        # 推論が無ければ null
        "reasoning_content": reasoning or None,
    }
    body: Dict[str, Any] = {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }
    if truncated:
        # stopイベントが来ないまま打ち切った応答
        body["truncated"] = True
    return body


def build_chunk(completion_id: str, model: str, kind: str, text: str) -> Dict[str, Any]:
    """
    差分1つ分の chat.completion.chunk。
    content と reasoning_content を同じチャンクに混ぜない。
    """
    field = "reasoning_content" if kind == "reasoning" else "content"
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": {field: text}, "finish_reason": None}],
    }


def build_final_chunk(
    completion_id: str,
    model: str,
    truncated: bool = False,
    error: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
    }
    if truncated:
        body["truncated"] = True
    if error:
        # ヘッダ送信後の失敗はHTTPエラーにできないので、最後のチャンクに載せる
        body["error"] = error
    return body


def encode_sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
