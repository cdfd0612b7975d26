"""Prometheus instruments for the hierarchy service."""

from __future__ import annotations

from prometheus_client import Counter

HIERARCHY_MUTATIONS = Counter(
    "hierarchy_mutations_total",
    "Structural mutations of the account hierarchy by operation and outcome.",
    ["operation", "outcome"],
)

CONTEXT_SWITCHES = Counter(
    "account_context_switches_total",
    "Account context switch attempts by outcome.",
    ["outcome"],
)
