from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

from .errors import QueueTimeout


logger = logging.getLogger(__name__)

# タイムアウトでキャンセルした処理の後始末（session abort 等）を待つ上限
CANCEL_GRACE_SEC = 5.0

Operation = Callable[[], Awaitable[Any]]


@dataclass
class QueueTask:
    operation: Operation
    timeout: float
    future: "asyncio.Future[Any]"


class RequestSerializer:
    """
    バックエンドへの処理を1件ずつ、到着順（FIFO）に流すキュー。
    OpenCodeは同時sessionに弱いので、同時に動く処理は常に1つだけにする。
    1件終わるごとに cooldown 秒だけ空けてから次を流す。
    """

    def __init__(self, cooldown: float = 0.2) -> None:
        self.cooldown = cooldown
        self._queue: Deque[QueueTask] = deque()
        self._active = False
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def active(self) -> bool:
        return self._active

    async def lock(self, operation: Operation, timeout: float) -> Any:
        """
        operation をキューに積み、順番が来たら実行して結果を返す。
        timeout 秒以内に終わらなければ QueueTimeout。
        クライアントが切断してもキューからは外れない（既知の制限）。
        """
        loop = asyncio.get_running_loop()
        task = QueueTask(operation=operation, timeout=timeout, future=loop.create_future())
        self._queue.append(task)
        if self._active or len(self._queue) > 1:
            logger.info(f"Request queued (pending={len(self._queue)})")
        self._kick()
        return await task.future

    async def close(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        while self._queue:
            task = self._queue.popleft()
            if not task.future.done():
                task.future.cancel()

    # ---- 内部処理 ----

    def _kick(self) -> None:
        # 処理ループは1本だけ。動いていなければ起こす
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            task = self._queue.popleft()
            if task.future.done():
                # 待っている間に呼び出し側がキャンセル済み
                continue
            self._active = True
            try:
                await self._run(task)
            finally:
                self._active = False
            # バックエンドを少し休ませてから次へ
            await asyncio.sleep(self.cooldown)

    async def _run(self, task: QueueTask) -> None:
        op = asyncio.ensure_future(task.operation())
        done, _ = await asyncio.wait({op}, timeout=task.timeout)

        if op not in done:
            logger.warning(f"Queued task timed out after {task.timeout:g}s, cancelling it")
            op.cancel()
            # 呼び出し側へは期限の時点で返す。この後の結果は捨てる
            if not task.future.done():
                task.future.set_exception(QueueTimeout(f"Request timed out after {task.timeout:g}s"))
            # キャンセル後の後始末を少しだけ待つ（待ちきれなくても次へ進む）
            await asyncio.wait({op}, timeout=CANCEL_GRACE_SEC)
            if op.done() and not op.cancelled():
                op.exception()
            return

        if task.future.done():
            if not op.cancelled():
                op.exception()
            return
        if op.cancelled():
            task.future.cancel()
        elif op.exception() is not None:
            task.future.set_exception(op.exception())
        else:
            task.future.set_result(op.result())
