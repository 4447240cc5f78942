# Pythonの将来互換（型ヒントが前方参照できる）
from __future__ import annotations

# ABC = 抽象クラス（インターフェースっぽいもの）を作るための標準ライブラリ
from abc import ABC, abstractmethod

from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Optional


class SessionBackend(ABC):
    """
    session型のバックエンド（OpenCode serve など）を同じ呼び方で使うためのIF。
    OpenAI互換APIとは違い「session作成 -> prompt投入 -> イベント/メッセージで結果取得」
    という流れになる。gateway側（bridge）はこのIFだけに依存する。
    """

    @abstractmethod
    async def create_session(self) -> Optional[str]:
        """新しいsessionを作ってIDを返す（取れなければNone）"""
        raise NotImplementedError

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def abort_session(self, session_id: str) -> None:
        """生成中のsessionを止める（止められないバックエンドなら何もしない）"""
        raise NotImplementedError

    @abstractmethod
    async def prompt(
        self,
        session_id: str,
        model: Dict[str, str],                  # {"providerID": ..., "modelID": ...}
        system: str,                            # まとめたsystem指示
        parts: List[Dict[str, Any]],            # [{"type": "text", "text": "User: ..."}]
        tools: Optional[Dict[str, bool]] = None,  # ツールID -> 有効/無効
    ) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def subscribe_events(self) -> AsyncContextManager[AsyncIterator[Dict[str, Any]]]:
        """
        ライブイベント購読。async with で接続し、中身は
        {"type": ..., "properties": {...}} を順にyieldするイテレータ。
        """
        raise NotImplementedError

    @abstractmethod
    async def list_messages(self, session_id: str) -> List[Dict[str, Any]]:
        """ポーリング用。sessionのメッセージ一覧（古い順）"""
        raise NotImplementedError

    @abstractmethod
    async def tool_ids(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    async def providers(self) -> Any:
        raise NotImplementedError
