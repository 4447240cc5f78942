from __future__ import annotations

import re
from typing import List, Optional, Tuple

# ツール無効化中でもモデルが書いてしまう呼び出しブロック（開始, 終了）
CALL_MARKERS: List[Tuple[str, str]] = [
    ("<function_calls>", "</function_calls>"),
    ("<function_call>", "</function_call>"),
    ("<tool_call>", "</tool_call>"),
    ("<tool_calls>", "</tool_calls>"),
]

_BLOCK_RE = re.compile(
    "|".join(f"{re.escape(open_)}.*?(?:{re.escape(close)}|$)" for open_, close in CALL_MARKERS),
    re.DOTALL,
)


def strip_tool_calls(text: str) -> str:
    """最終テキストから呼び出しブロックを丸ごと消す（閉じていないブロックは末尾まで消す）"""
    if not text:
        return text
    return _BLOCK_RE.sub("", text)


class ToolCallFilter:
    """
    ストリーミング用のフィルタ。ブロックが複数チャンクにまたがっても中身を出さない。
    マーカー自体は1チャンク内に連続して届く前提。
    """

    def __init__(self) -> None:
        # 今ブロックの中なら、その終了マーカー
        self._closing: Optional[str] = None

    @property
    def inside(self) -> bool:
        return self._closing is not None

    def feed(self, chunk: str) -> str:
        out: List[str] = []
        while chunk:
            if self._closing is not None:
                idx = chunk.find(self._closing)
                if idx < 0:
                    return "".join(out)
                chunk = chunk[idx + len(self._closing):]
                self._closing = None
                continue

            hit = self._find_open(chunk)
            if hit is None:
                out.append(chunk)
                break
            idx, open_, close = hit
            out.append(chunk[:idx])
            self._closing = close
            chunk = chunk[idx + len(open_):]
        return "".join(out)

    @staticmethod
    def _find_open(chunk: str) -> Optional[Tuple[int, str, str]]:
        best: Optional[Tuple[int, str, str]] = None
        for open_, close in CALL_MARKERS:
            idx = chunk.find(open_)
            if idx >= 0 and (best is None or idx < best[0]):
                best = (idx, open_, close)
        return best
