from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..errors import BackendUnreachable


logger = logging.getLogger(__name__)

# ヘルスチェックは軽く・短く（起動待ちループでも毎回これを使う）
HEALTH_TIMEOUT_SEC = 1.5


async def check_health(
    client: httpx.AsyncClient,
    base_url: str,
    timeout: float = HEALTH_TIMEOUT_SEC,
) -> None:
    """
    バックエンドの /health を1回だけ叩く。副作用なし。
    200 かつ（JSONなら）status=="ok" / healthy==true のときだけ成功。
    それ以外（接続エラー、タイムアウト、非200、ok以外）は BackendUnreachable。
    """
    url = f"{base_url.rstrip('/')}/health"
    try:
        r = await client.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        raise BackendUnreachable(f"Backend not reachable at {base_url}: {e!r}") from e

    if r.status_code != 200:
        raise BackendUnreachable(f"Backend not ready ({r.status_code})")

    try:
        body = r.json()
    except ValueError:
        # 本文がJSONでない（"ok" だけ返す等）なら200で十分とみなす
        return

    if isinstance(body, dict):
        status: Optional[str] = body.get("status")
        if status is not None and str(status).lower() != "ok":
            raise BackendUnreachable(f"Backend reported status {status!r}")
        if body.get("healthy") is False:
            raise BackendUnreachable("Backend reported healthy=false")


async def is_healthy(client: httpx.AsyncClient, base_url: str, timeout: float = HEALTH_TIMEOUT_SEC) -> bool:
    try:
        await check_health(client, base_url, timeout)
    except BackendUnreachable as e:
        logger.debug(f"Health check failed: {e}")
        return False
    return True
