"""
Prometheus metrics for the task queue.

Collectors are module level so every distributor, worker and processor in a
process shares the same series.
"""

from prometheus_client import Counter, Gauge, Histogram

tasks_enqueued_total = Counter(
    "coffeeshop_tasks_enqueued_total",
    "Total number of tasks written to the queue backend",
    ["task_type", "queue"],
)

tasks_processed_total = Counter(
    "coffeeshop_tasks_processed_total",
    "Total number of task attempts by outcome",
    ["task_type", "queue", "outcome"],
)

task_duration_seconds = Histogram(
    "coffeeshop_task_duration_seconds",
    "Wall time spent in task handlers",
    ["task_type"],
)

active_workers = Gauge(
    "coffeeshop_active_workers",
    "Number of running workers per queue class",
    ["queue"],
)

recovered_leases_total = Counter(
    "coffeeshop_recovered_leases_total",
    "Tasks returned to the queue after their lease expired",
    ["queue"],
)
