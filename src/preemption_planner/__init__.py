"""Preemption Planner.

Chooses which lower-priority allocations on a node to preempt so that a
higher-priority job's resource ask fits, and serves those plans together
with Prometheus metrics over HTTP.
"""

__version__ = "0.1.0"
