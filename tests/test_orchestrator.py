from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import FakeBackend, FakeSupervisor, assistant_message, part_event, stop_event
from opencode_gateway.errors import InvalidRequest, SessionCreationFailed
from opencode_gateway.orchestrator import Orchestrator


def _orchestrator(config, backend: FakeBackend) -> Orchestrator:
    config.disable_tools = False
    orchestrator = Orchestrator(config, backend=backend, http_client=httpx.AsyncClient())
    orchestrator.bridge.supervisor = FakeSupervisor()
    orchestrator.bridge.first_delta_timeout = 0.05
    orchestrator.bridge.idle_timeout = 0.05
    orchestrator.bridge.poll_interval = 0.01
    return orchestrator


async def _drain(stream):
    return [chunk async for chunk in stream]


def _payloads(chunks):
    return [json.loads(c[len("data: "):]) for c in chunks if c != "data: [DONE]\n\n"]


async def test_non_streaming_completion(config):
    backend = FakeBackend(
        events=[part_event("ses_1", "why", kind="reasoning"), part_event("ses_1", "42"), stop_event("ses_1")]
    )
    body = await _orchestrator(config, backend).complete_chat(
        {"model": "opencode/glm-4.7-free", "messages": [{"role": "user", "content": "q"}]}
    )

    assert body["object"] == "chat.completion"
    assert body["model"] == "opencode/glm-4.7-free"
    assert body["choices"][0]["message"]["content"] == "42"
    assert body["choices"][0]["message"]["reasoning_content"] == "why"


async def test_streaming_emits_deltas_then_stop_then_done(config):
    backend = FakeBackend(
        events=[part_event("ses_1", "r", kind="reasoning"), part_event("ses_1", "a"), part_event("ses_1", "b"), stop_event("ses_1")]
    )
    stream = await _orchestrator(config, backend).complete_chat(
        {"stream": True, "messages": [{"role": "user", "content": "q"}]}
    )
    chunks = await _drain(stream)

    assert chunks[-1] == "data: [DONE]\n\n"
    payloads = _payloads(chunks)
    deltas = [p["choices"][0]["delta"] for p in payloads]
    assert deltas == [{"reasoning_content": "r"}, {"content": "a"}, {"content": "b"}, {}]
    assert payloads[-1]["choices"][0]["finish_reason"] == "stop"
    assert len({p["id"] for p in payloads}) == 1


async def test_streaming_failure_before_first_chunk_raises(config):
    backend = FakeBackend(session_ids=[None])
    with pytest.raises(SessionCreationFailed):
        await _orchestrator(config, backend).complete_chat(
            {"stream": True, "messages": [{"role": "user", "content": "q"}]}
        )


async def test_streaming_failure_after_first_chunk_ends_stream(config):
    config.request_timeout = 0.3
    # 差分が1つ来たあと、イベントもポーリングも終わらない
    backend = FakeBackend(events=[part_event("ses_1", "partial")], snapshots=[[assistant_message(finish=None)]])
    orchestrator = _orchestrator(config, backend)
    orchestrator.bridge.idle_timeout = 5.0

    stream = await orchestrator.complete_chat({"stream": True, "messages": [{"role": "user", "content": "q"}]})
    chunks = await _drain(stream)

    payloads = _payloads(chunks)
    assert payloads[0]["choices"][0]["delta"] == {"content": "partial"}
    assert payloads[-1]["choices"][0]["finish_reason"] == "stop"
    assert payloads[-1]["error"]["type"] == "timeout"
    assert chunks[-1] == "data: [DONE]\n\n"


async def test_streaming_polling_fallback_looks_the_same(config):
    backend = FakeBackend(events=[], snapshots=[[assistant_message(text="polled")]])
    stream = await _orchestrator(config, backend).complete_chat(
        {"stream": True, "messages": [{"role": "user", "content": "q"}]}
    )
    deltas = [p["choices"][0]["delta"] for p in _payloads(await _drain(stream))]
    assert deltas == [{"content": "polled"}, {}]


async def test_invalid_messages_are_rejected(config):
    orchestrator = _orchestrator(config, FakeBackend())
    for payload in ({}, {"messages": []}, {"messages": "hi"}, {"messages": ["hi"]}):
        with pytest.raises(InvalidRequest):
            await orchestrator.complete_chat(payload)


async def test_concurrent_requests_never_overlap_on_the_backend(config):
    backend = FakeBackend(
        session_ids=["ses_1"],
        events=[0.01, part_event("ses_1", "x"), stop_event("ses_1")],
    )
    orchestrator = _orchestrator(config, backend)
    requests = [{"messages": [{"role": "user", "content": str(i)}]} for i in range(4)]

    results = await asyncio.gather(*(orchestrator.complete_chat(r) for r in requests))

    assert all(r["choices"][0]["message"]["content"] == "x" for r in results)
    assert backend.max_active == 1
    assert [p["parts"][0]["text"] for p in backend.prompts] == ["User: 0", "User: 1", "User: 2", "User: 3"]


async def test_list_models_uses_backend_listing(config):
    class _Providers(FakeBackend):
        async def providers(self):
            return {"providers": [{"id": "opencode", "models": {"glm-4.7-free": {"name": "GLM"}}}]}

    models = await _orchestrator(config, _Providers()).list_models()
    assert models == {
        "object": "list",
        "data": [{"id": "opencode/glm-4.7-free", "object": "model", "name": "GLM", "owned_by": "opencode"}],
    }
