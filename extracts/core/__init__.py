"""Core infrastructure: logging, resilience, lifespan."""
