# cardinality/__init__.py
# Timeseries cardinality manager package initializer

# Submodules are imported on demand; keep this light.
__all__ = [
    "applier", "backend", "bootstrap", "budget", "config", "daemon", "errors",
    "estimator", "events", "health", "keepset", "locks", "metrics", "model",
    "planner", "relabel", "remote_write", "runner", "store", "ticker", "utils", "wal",
]
