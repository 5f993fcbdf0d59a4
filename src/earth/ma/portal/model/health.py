import asyncio


class HealthGauge:
    """
    Error-burst gauge backing the readiness probe.

    Unexpected errors (not validation failures or upstream refusals) increase the gauge, and a background task lowers
    it by one every tick. While the value stays above the threshold the service reports itself as not ready, so a
    burst of failures takes the instance out of rotation until things settle.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    @property
    def value(self) -> int:
        return self._value

    async def womp(self, d=1) -> int:
        async with self._lock:
            self._value += int(d)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
