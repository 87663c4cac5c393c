"""Core utilities: configuration, logging, errors, metrics, circuit breaking."""
