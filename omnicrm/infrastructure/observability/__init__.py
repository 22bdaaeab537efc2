"""
Structured logging for the worker and processors.
"""

from omnicrm.infrastructure.observability.logging import get_logger, log_job_event, setup_logging

__all__ = ["get_logger", "log_job_event", "setup_logging"]
