"""Step timing and Prometheus metrics for deployment runs."""

from dataclasses import dataclass, field
from time import perf_counter_ns
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, write_to_textfile

REGISTRY = CollectorRegistry()

STEP_COUNT = Counter(
    "agent_deploy_steps_total",
    "Deployment steps by terminal state",
    ["step", "state"],
    registry=REGISTRY,
)

STEP_DURATION = Histogram(
    "agent_deploy_step_duration_seconds",
    "Deployment step duration",
    ["step"],
    registry=REGISTRY,
)


@dataclass
class StepTimer:
    start_ns: int = field(default_factory=perf_counter_ns)
    step_starts: Dict[str, int] = field(default_factory=dict)
    step_durations_ns: Dict[str, int] = field(default_factory=dict)
    end_ns: Optional[int] = None

    def start_step(self, name: str) -> None:
        """Mark the start of a step."""
        self.step_starts[name] = perf_counter_ns()

    def end_step(self, name: str) -> None:
        """Mark the end of a step and record its duration."""
        if name in self.step_starts:
            duration = perf_counter_ns() - self.step_starts[name]
            self.step_durations_ns[name] = duration
            STEP_DURATION.labels(step=name).observe(duration / 1_000_000_000.0)

    def finish(self) -> None:
        self.end_ns = perf_counter_ns()

    def to_dict(self) -> Dict[str, float]:
        """Per-step durations in milliseconds, plus ``total`` once finished."""
        durations = {k: v / 1_000_000.0 for k, v in self.step_durations_ns.items()}
        if self.end_ns is not None:
            durations["total"] = (self.end_ns - self.start_ns) / 1_000_000.0
        return durations


def record_step_state(step: str, state: str) -> None:
    STEP_COUNT.labels(step=step, state=state).inc()


def write_metrics(path: str) -> None:
    """Write the deployment registry in Prometheus text format (node-exporter textfile)."""
    write_to_textfile(path, REGISTRY)
