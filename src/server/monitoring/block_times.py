# -*- coding: utf-8 -*-
"""
出块间隔滑动窗口
"""

from collections import deque
from typing import Deque, List, Optional


class BlockTimeWindow:
    """固定容量的出块间隔窗口，超出容量时淘汰最早的样本"""

    def __init__(self, capacity: int = 10):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._samples: Deque[int] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or 0

    def push(self, interval_ms: int) -> None:
        self._samples.append(interval_ms)

    def samples(self) -> List[int]:
        return list(self._samples)

    def average(self) -> Optional[float]:
        if not self._samples:
            return None
        return sum(self._samples) / len(self._samples)

    def __len__(self) -> int:
        return len(self._samples)
