import random


class DelayScheduler:
    def __init__(self, base_seconds: float, variation: float, rng: random.Random | None = None) -> None:
        if base_seconds < 0:
            raise ValueError("base delay must be >= 0")
        if not 0.0 <= variation <= 1.0:
            raise ValueError("delay variation must be within [0, 1]")
        self.base_seconds = base_seconds
        self.variation = variation
        self._rng = rng or random.Random()

    @property
    def bounds(self) -> tuple[float, float]:
        half = self.variation / 2
        return self.base_seconds * (1 - half), self.base_seconds * (1 + half)

    def next(self) -> float:
        half = self.variation / 2
        jitter = self._rng.uniform(-half, half)
        low, high = self.bounds
        # uniform() may round past its upper edge; keep the documented window.
        return min(max(self.base_seconds * (1 + jitter), low), high)
