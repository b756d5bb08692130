"""
Worker node scale-up latency benchmark for OpenShift clusters.

This package spreads a requested number of new machines across the existing
MachineSets, waits for them to converge and turns the machine and node
lifecycle timestamps into latency samples and quantile summaries.
"""

from .main import main

__all__ = ["main"]
