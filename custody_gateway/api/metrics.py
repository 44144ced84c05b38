"""Prometheus metrics for the custody gateway."""

from __future__ import annotations

from prometheus_client import Counter, Histogram, generate_latest

REQUEST_COUNT = Counter(
    "custody_gateway_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "custody_gateway_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

UPSTREAM_CALLS = Counter(
    "custody_gateway_upstream_calls_total",
    "Calls to external providers",
    ["service", "outcome"],  # identity|custody|chain, ok|error
)

TRANSFERS = Counter(
    "custody_gateway_transfers_total",
    "Transfer send attempts by result",
    ["result"],  # broadcast, rejected, failed
)

WALLETS_PROVISIONED = Counter(
    "custody_gateway_wallets_provisioned_total",
    "Remote wallets created at signup",
)

WALLET_POLLS = Counter(
    "custody_gateway_wallet_polls_total",
    "Wallet readiness polling outcomes",
    ["outcome"],  # ready, timeout, error
)


def metrics_response() -> bytes:
    """Generate Prometheus-compatible metrics text."""
    return generate_latest()
