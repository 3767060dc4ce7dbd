"""
プレビュー参照の管理

画像バイト列を表示側から参照するためのハンドルを発行・解放します。
各ハンドルは一度だけ解放され、解放後は参照できません。
"""

from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional

from loguru import logger

# 解放済みトークンの履歴は直近のものだけ保持する
DEFAULT_REVOKED_HISTORY = 1024


@dataclass(frozen=True)
class PreviewRef:
    token: str
    mime: str
    size: int


class PreviewRefPool:
    """発行済みプレビュー参照の保持と解放"""

    def __init__(self, revoked_history: int = DEFAULT_REVOKED_HISTORY) -> None:
        self._lock = threading.Lock()
        self._live: Dict[str, bytes] = {}
        self._revoked: "OrderedDict[str, None]" = OrderedDict()
        self._revoked_history = max(0, revoked_history)

    def create(self, data: bytes, mime: str) -> PreviewRef:
        ref = PreviewRef(token=f"preview:{uuid.uuid4().hex}", mime=mime, size=len(data))
        with self._lock:
            self._live[ref.token] = data
        return ref

    def revoke(self, ref: Optional[PreviewRef]) -> bool:
        """参照を解放する。解放済み・未発行の参照は何もせず False を返す。"""
        if ref is None:
            return False
        with self._lock:
            if self._live.pop(ref.token, None) is None:
                logger.debug(f"解放済みまたは未発行のプレビュー参照です: {ref.token}")
                return False
            self._revoked[ref.token] = None
            while len(self._revoked) > self._revoked_history:
                self._revoked.popitem(last=False)
        return True

    def resolve(self, ref: PreviewRef) -> Optional[bytes]:
        with self._lock:
            return self._live.get(ref.token)

    def is_live(self, ref: PreviewRef) -> bool:
        with self._lock:
            return ref.token in self._live

    def was_revoked(self, ref: PreviewRef) -> bool:
        with self._lock:
            return ref.token in self._revoked

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

