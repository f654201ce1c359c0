# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Observability for the quota scheduler.

Available components:
- MetricsExporter: Prometheus gauges, counters and histograms
- OutcomeRecorderProtocol: Interface the request processor reports through
- constants: Metric names and histogram buckets
"""

from .constants import METRIC_PREFIX
from .exporter import MetricsExporter
from .protocols import OutcomeRecorderProtocol

__all__ = [
    "METRIC_PREFIX",
    "MetricsExporter",
    "OutcomeRecorderProtocol",
]
