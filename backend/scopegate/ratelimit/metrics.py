from prometheus_client import Counter

from scopegate.monitoring.prometheus_metrics import REGISTRY

rl_decisions = Counter(
    "scopegate_rl_decisions_total",
    "rate-limit checks by outcome",
    ["action", "outcome"],  # outcome: allow | block
    registry=REGISTRY,
)

rl_store_errors = Counter(
    "scopegate_rl_store_errors_total",
    "counter store failures (connection errors and timeouts)",
    ["operation"],
    registry=REGISTRY,
)

rl_window_armed = Counter(
    "scopegate_rl_window_armed_total",
    "windows whose expiry was armed by a first increment",
    [],
    registry=REGISTRY,
)

rl_resets = Counter(
    "scopegate_rl_resets_total",
    "administrative rate-limit resets",
    [],
    registry=REGISTRY,
)

__all__ = [
    "rl_decisions",
    "rl_store_errors",
    "rl_window_armed",
    "rl_resets",
]
