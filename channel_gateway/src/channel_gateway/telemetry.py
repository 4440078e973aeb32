"""
Prometheus metrics for the channel gateway.

Metrics
-------

* ``channel_gateway_connection_state`` – 0 uninitialized, 1 initializing,
  2 ready.
* ``channel_gateway_bound_subscriptions`` – subscriptions currently bound
  to the active client.
* ``channel_gateway_deliveries_total{outcome=...}`` – webhook deliveries
  by outcome (``delivered`` or ``failed``).
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

connection_state_gauge = Gauge(
    "channel_gateway_connection_state",
    "Connection state (0=uninitialized,1=initializing,2=ready)",
)
bound_subscriptions_gauge = Gauge(
    "channel_gateway_bound_subscriptions",
    "Subscriptions bound to the active client",
)
deliveries_counter = Counter(
    "channel_gateway_deliveries",
    "Webhook deliveries by outcome",
    labelnames=["outcome"],
)


def start_metrics_server(port: int) -> None:
    """Expose metrics over HTTP; ``0`` disables the endpoint."""
    if port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:
        logger.warning("Failed to start Prometheus server on port %d: %s", port, exc)
        return
    logger.info("Metrics endpoint listening on port %d", port)
