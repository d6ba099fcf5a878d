#This program creates drifting plant telemetry for demos and testing.
#Each tick nudges every metric by a small random step and clamps it
#back into its valid range, so the dashboard shows slow, plausible motion.

import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from MSG import MetricKind, TelemetrySample, now_ms


@dataclass(frozen=True)
class WalkSpec:
    delta: Tuple[float, float]   # step range per tick
    bounds: Tuple[float, float]  # clamp range
    initial: Tuple[float, float]  # realistic start range
    integer_steps: bool = True


# Fixed publish order: water -> soil -> temperature -> light
WALK_SPECS: Dict[MetricKind, WalkSpec] = {
    MetricKind.WATER_LEVEL: WalkSpec(delta=(-2, 2), bounds=(5, 95), initial=(35, 75)),
    MetricKind.SOIL_MOISTURE: WalkSpec(delta=(-2, 3), bounds=(10, 90), initial=(30, 65)),
    MetricKind.TEMPERATURE: WalkSpec(delta=(-0.4, 0.4), bounds=(12.0, 35.0), initial=(22.0, 28.0),
                                     integer_steps=False),
    MetricKind.LIGHT: WalkSpec(delta=(-900, 900), bounds=(500, 20000), initial=(3500, 14000)),
}


def clamp(value: float, min_val: float, max_val: float) -> float:
    return max(min_val, min(max_val, value))


class RandomWalkGenerator:
    """Holds the simulator state and advances it one bounded step at a time."""

    def __init__(self, rng: Optional[random.Random] = None,
                 state: Optional[Dict[MetricKind, float]] = None):
        self.rng = rng or random.Random()
        self.sequence = 0
        self.state: Dict[MetricKind, float] = {}
        for kind, spec in WALK_SPECS.items():
            if state is not None and kind in state:
                self.state[kind] = clamp(float(state[kind]), *spec.bounds)
            else:
                self.state[kind] = self._draw(spec.initial, spec.integer_steps)

    def _draw(self, span: Tuple[float, float], integer: bool) -> float:
        lo, hi = span
        if integer:
            return float(self.rng.randint(int(lo), int(hi)))
        return self.rng.uniform(lo, hi)

    def step(self, kind: MetricKind, delta: Optional[float] = None,
             timestamp: Optional[int] = None) -> TelemetrySample:
        """Advance one metric. `delta` overrides the random draw."""
        spec = WALK_SPECS[kind]
        if delta is None:
            delta = self._draw(spec.delta, spec.integer_steps)
        self.state[kind] = clamp(self.state[kind] + delta, *spec.bounds)
        return TelemetrySample(
            kind=kind,
            value=self.state[kind],
            timestamp=timestamp if timestamp is not None else now_ms(),
        )

    def tick(self, timestamp: Optional[int] = None) -> List[TelemetrySample]:
        # One timestamp for the whole tick
        self.sequence += 1
        ts = timestamp if timestamp is not None else now_ms()
        return [self.step(kind, timestamp=ts) for kind in WALK_SPECS]

    def snapshot(self) -> Dict[str, float]:
        return {kind.value: value for kind, value in self.state.items()}
