"""
Soak test harness for serve-hostname pods.

This package places a fixed number of serve-hostname pods on every node of a
Kubernetes cluster, puts a single service in front of them, and repeatedly
fans out bounded-concurrency queries against that service, reporting missing
responses and pods that never answered in each iteration.
"""

from .main import main

__all__ = ["main"]
