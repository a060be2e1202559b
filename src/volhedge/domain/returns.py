from __future__ import annotations

from dataclasses import dataclass, field

from volhedge.domain.errors import InvalidParams, MathOverflow
from volhedge.domain.fixed_point import MAX_RETURN_ABS_FP, RET_FP_SCALE, clamp, div_trunc

N_RETURNS = 32


@dataclass
class ReturnBuffer:
    spacing_ticks: int
    samples: list[int] = field(default_factory=lambda: [0] * N_RETURNS)
    cursor: int = 0
    nonzero_samples: int = 0
    baseline_price_fp: int = 0
    last_sample_at: int | None = None

    def __post_init__(self) -> None:
        if self.spacing_ticks <= 0:
            raise InvalidParams("return spacing must be > 0", spacing_ticks=self.spacing_ticks)
        if not self.samples:
            raise InvalidParams("return buffer capacity must be > 0")

    @property
    def capacity(self) -> int:
        return len(self.samples)

    def spacing_open(self, now: int) -> bool:
        if self.last_sample_at is None:
            return True
        return now - self.last_sample_at >= self.spacing_ticks

    def chronological(self) -> list[int]:
        """Samples oldest first (the slot under the cursor is the oldest)."""
        idx = self.cursor % self.capacity
        return self.samples[idx:] + self.samples[:idx]


def compute_return_fp(price_fp: int, previous_price_fp: int) -> int:
    if previous_price_fp <= 0:
        raise MathOverflow("return baseline must be positive")
    raw = div_trunc((price_fp - previous_price_fp) * RET_FP_SCALE, previous_price_fp)
    return clamp(raw, -MAX_RETURN_ABS_FP, MAX_RETURN_ABS_FP)


def record_return(buffer: ReturnBuffer, *, now: int, price_fp: int) -> int | None:
    """Feed one accepted price into the ring.

    Returns the written sample, or ``None`` when the call was a no-op (spacing
    gate closed) or only established the bootstrap baseline.
    """
    if not buffer.spacing_open(now):
        return None

    if buffer.baseline_price_fp <= 0:
        buffer.baseline_price_fp = price_fp
        buffer.last_sample_at = now
        return None

    sample = compute_return_fp(price_fp, buffer.baseline_price_fp)

    idx = buffer.cursor % buffer.capacity
    previous = buffer.samples[idx]
    buffer.samples[idx] = sample
    buffer.cursor = (idx + 1) % buffer.capacity

    if previous == 0 and sample != 0:
        buffer.nonzero_samples += 1
    elif previous != 0 and sample == 0:
        if buffer.nonzero_samples == 0:
            raise MathOverflow("nonzero sample counter underflow")
        buffer.nonzero_samples -= 1

    buffer.baseline_price_fp = price_fp
    buffer.last_sample_at = now
    return sample
