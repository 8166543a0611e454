"""
Observability Package — Tracing

Provides:
  TracingConfig   — LangSmith initialisation
  traced          — decorator for timing async pipeline stages

Usage::

    # At process startup (API lifespan, Celery worker_process_init):
    from docpipe.observability.tracing import TracingConfig
    TracingConfig.init()
"""

from docpipe.observability.tracing import TracingConfig, traced

__all__ = ["TracingConfig", "traced"]
