"""
Moving (rolling) average of a numeric stream.
"""

from collections import deque


class RollingAverage:
    """
    Arithmetic mean over the last `size` samples.

    A running sum is kept so that `add` and `get` are O(1).

    Example:
        >>> avg = RollingAverage(2)
        >>> for value in (10, 20, 30):
        ...     avg.add(value)
        >>> avg.get()
        25.0
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("size must be at least 1")
        self._size = size
        self._hist = deque()
        self._sum = 0.0

    @property
    def size(self) -> int:
        """Capacity of the window."""
        return self._size

    def add(self, value: float) -> None:
        """Push a sample, evicting the oldest one once the window is full."""
        self._hist.append(value)
        self._sum += value
        if len(self._hist) > self._size:
            self._sum -= self._hist.popleft()

    def get(self) -> float:
        """Mean of the current window, 0.0 when empty."""
        if not self._hist:
            return 0.0
        return self._sum / len(self._hist)

    def __len__(self) -> int:
        return len(self._hist)
