"""Tuning knobs for pairing and relaying.

settings.py reads them from the JSON config; the engines only ever see these
frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

STRICT = "strict"
BEST_EFFORT = "best_effort"
RELAY_MODES = (STRICT, BEST_EFFORT)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for failed sends."""

    attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 8.0
    max_total_wait: float = 30.0

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Return the wait before retrying after failed ``attempt`` (1-indexed)."""

        delay = self.base_delay * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)


@dataclass(frozen=True)
class RelayConfig:
    """Batching and failure policy for the relay engine."""

    max_lines: int = 20
    max_bytes: int = 4096
    max_age: Optional[float] = 2.0
    mode: str = BEST_EFFORT
    max_pending_batches: int = 16
    min_send_interval: float = 1.0
    queue_lines: int = 1000

    def __post_init__(self) -> None:
        if self.mode not in RELAY_MODES:
            raise ValueError(f"Unsupported relay mode: {self.mode}")
        if self.max_lines < 1 or self.max_bytes < 4:
            raise ValueError("max_lines must be >= 1 and max_bytes >= 4")

    @property
    def strict(self) -> bool:
        return self.mode == STRICT


@dataclass(frozen=True)
class PairingConfig:
    """Pairing handshake settings."""

    code_digits: int = 6
    poll_interval: float = 1.5
    timeout: float = 300.0
