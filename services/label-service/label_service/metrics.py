"""Prometheus instruments for ledger and label activity."""

from __future__ import annotations

from prometheus_client import Counter

CREDIT_OPERATIONS = Counter(
    "credit_operations_total",
    "Committed credit assign/revoke operations.",
    ["operation", "actor_role"],
)

LABEL_OPERATIONS = Counter(
    "label_operations_total",
    "Label purchase and refund attempts by outcome.",
    ["operation", "outcome"],
)

RECONCILIATION_ALERTS = Counter(
    "ledger_reconciliation_alerts_total",
    "Provider side effects that could not be matched with a ledger entry.",
    ["operation"],
)
