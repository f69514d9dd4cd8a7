"""
runlens - Execution analytics for workflow catalogs.

runlens reads the execution history a workflow orchestrator records
(executions and their event messages) and turns it into dashboard
metrics, trends and reliability analytics.

runlens is READ-ONLY:
- It never writes to the catalog it reads
- It never persists what it derives
- Derived values live only in a short-lived in-process cache

Layers:
-------
partitions     package name -> business unit, and back into filters
store          parameterized reads against the catalog
metrics        dashboard folds
analytics      advanced analytics folds
engine         windowed reads + folds, one computation per method
cache          TTL cache-aside
facade         concurrent, cached, all-or-fail snapshot loads
api / cli      thin outer surfaces

runlens reports. Operators decide.
"""

__version__ = "1.0.0"
