"""
签发接口的进程内限流。
按客户端地址统计固定 60 秒窗口内的请求数，超过上限时返回需要等待的秒数。
"""

from __future__ import annotations

import threading
import time
from typing import Dict, Tuple


class FixedWindowRateLimiter:
    """按客户端地址计数的固定窗口限流器（进程内存）。"""

    def __init__(self, window_seconds: float = 60.0):
        self.window_seconds = window_seconds
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int) -> float:
        """
        记录一次请求。
        :return: 0 表示放行；否则为距离窗口重置的秒数。
        """
        if limit <= 0:
            return 0.0
        now = time.monotonic()
        with self._lock:
            start, count = self._hits.get(key, (now, 0))
            if now - start >= self.window_seconds:
                start, count = now, 0
            if count >= limit:
                return max(self.window_seconds - (now - start), 0.001)
            self._hits[key] = (start, count + 1)
            self._prune(now)
        return 0.0

    def _prune(self, now: float) -> None:
        expired = [k for k, (start, _) in self._hits.items() if now - start >= self.window_seconds]
        for k in expired:
            self._hits.pop(k, None)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


limiter = FixedWindowRateLimiter()
