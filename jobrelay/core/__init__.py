"""Application wiring: lifespan, middleware, error tracking."""
