"""
Structured logging for Backend IVS.

JSON logs with timestamp, event_type, request_id / subject_user_id context.
Use get_logger() in all modules for aggregation-friendly output.
"""

from backend_ivs.logging.logger import bind_request, get_logger

__all__ = ["bind_request", "get_logger"]
