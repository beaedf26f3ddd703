from __future__ import annotations

import logging
from collections import deque
from typing import Deque

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Degraded-connectivity detector over detail fetch outcomes.

    Trips when the consecutive failure count reaches ``consecutive_threshold``
    and the rolling success rate over the last ``window`` outcomes is below
    ``success_floor``. A NetworkDown signal trips it directly with the longer
    cooldown.
    """

    def __init__(
        self,
        consecutive_threshold: int = 8,
        success_floor: float = 0.3,
        window: int = 50,
        cooldown_seconds: float = 60.0,
        network_down_cooldown_seconds: float = 120.0,
    ) -> None:
        self.consecutive_threshold = max(1, int(consecutive_threshold))
        self.success_floor = float(success_floor)
        self.cooldown_seconds = float(cooldown_seconds)
        self.network_down_cooldown_seconds = float(network_down_cooldown_seconds)
        self.outcomes: Deque[bool] = deque(maxlen=max(1, int(window)))
        self.consecutive_failures = 0
        self.attempts = 0
        self.successes = 0
        self.trips = 0

    @property
    def rolling_success_rate(self) -> float:
        if not self.outcomes:
            return 1.0
        return sum(1 for ok in self.outcomes if ok) / len(self.outcomes)

    def record(self, success: bool) -> None:
        self.attempts += 1
        self.outcomes.append(bool(success))
        if success:
            self.successes += 1
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

    def should_trip(self) -> bool:
        return (
            self.consecutive_failures >= self.consecutive_threshold
            and self.rolling_success_rate < self.success_floor
        )

    def trip(self, network_down: bool = False) -> float:
        """Reset the failure streak and return the cooldown to apply."""
        self.trips += 1
        self.consecutive_failures = 0
        cooldown = self.network_down_cooldown_seconds if network_down else self.cooldown_seconds
        logger.warning(
            "circuit breaker tripped (%s), rolling success %.0f%%, cooling down %.0fs",
            "network down" if network_down else "degraded",
            self.rolling_success_rate * 100,
            cooldown,
        )
        return cooldown
