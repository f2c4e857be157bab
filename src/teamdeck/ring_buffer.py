from __future__ import annotations


class OutputRingBuffer:
    """Fixed-capacity byte store that keeps the most recent output of a session.

    Appending past ``capacity`` evicts from the oldest end, so the retained
    bytes are always a contiguous, in-order suffix of everything written.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data = bytearray()
        self.total_written = 0

    def __len__(self) -> int:
        return len(self._data)

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        self.total_written += len(chunk)
        if len(chunk) >= self.capacity:
            self._data = bytearray(chunk[-self.capacity :])
            return
        self._data.extend(chunk)
        overflow = len(self._data) - self.capacity
        if overflow > 0:
            del self._data[:overflow]

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def text(self) -> str:
        data = self._data
        # eviction may have cut a multi-byte character; skip its continuation bytes
        start = 0
        if self.total_written > len(data):
            while start < len(data) and start < 3 and (data[start] & 0xC0) == 0x80:
                start += 1
        return bytes(data[start:]).decode("utf-8", errors="replace")

    def clear(self) -> None:
        self._data.clear()
