"""Service layer: week math, validation, sessions, aggregation and retries."""
