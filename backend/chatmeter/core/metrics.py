"""Prometheus counters for metering and reconciliation outcomes."""
from prometheus_client import REGISTRY, Counter


def _counter(name: str, documentation: str, labelnames: tuple[str, ...] = ()) -> Counter:
    # Guard against re-registration when modules are reloaded (tests, --reload)
    existing = REGISTRY._names_to_collectors.get(name)  # type: ignore[attr-defined]
    if existing is not None:
        return existing  # type: ignore[return-value]
    return Counter(name, documentation, labelnames)


WEBHOOK_EVENTS = _counter(
    "chatmeter_webhook_events_total",
    "Billing webhook deliveries by reconciliation result",
    ("result",),
)
QUOTA_DECISIONS = _counter(
    "chatmeter_quota_decisions_total",
    "Quota guard admission decisions",
    ("decision",),
)
USAGE_RECORDED = _counter(
    "chatmeter_usage_recorded_total",
    "Completed chat turns recorded against usage",
)
