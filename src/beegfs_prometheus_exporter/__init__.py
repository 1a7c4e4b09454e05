"""BeeGFS Prometheus Exporter.

Prometheus exporter for the BeeGFS parallel filesystem that periodically
reads cluster status (storage server stats, targets, clients) and republishes
the counters as Prometheus metrics.
"""

__version__ = "0.1.0"
