"""API routers."""

from jobrelay.routers import health, jobs, metrics

__all__ = ["health", "jobs", "metrics"]
