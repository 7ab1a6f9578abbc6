"""
Prometheus metrics: workflow transitions (committed / rejected) and scheduled publication outcomes.
"""
from prometheus_client import Counter, Gauge, generate_latest

# Engine: committed transitions (forced = admin override path)
workflow_transitions_total = Counter(
    "workflow_transitions_total",
    "Total committed lifecycle transitions",
    ["entity_type", "from_state", "to_state", "forced"],
)
workflow_transitions_rejected_total = Counter(
    "workflow_transitions_rejected_total",
    "Total lifecycle transitions rejected by the engine",
    ["entity_type", "error"],
)

# Scheduler: due publications picked up from the schedule
scheduled_publications_processed_total = Counter(
    "scheduled_publications_processed_total",
    "Total scheduled publications processed",
    ["outcome"],
)

# Schedule depth (sampled on scrape)
scheduled_publications_pending = Gauge(
    "scheduled_publications_pending",
    "Number of products waiting in the publication schedule",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
