"""
Core Infrastructure for tts-gateway.

This package provides foundational components:
    - config.py: Configuration loading and validation
    - errors.py: Error codes and the exception hierarchy
    - auth.py: Caller identity resolution
    - logging/: Structured logging with numeric levels
    - metrics.py: Prometheus metrics collection
"""
