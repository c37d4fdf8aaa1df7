import asyncio


class HealthGauge:
    """
    Readiness counter for the service.

    Errors that escape normal request handling bump the counter ("womp"), and a background task ticks it back down
    once a second. A burst of failures pushes the value past the threshold and `/internal/ready` starts returning
    503 until things settle again.
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
