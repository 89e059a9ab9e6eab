"""
Structured logging for Backend PayWatch.

JSON logs with timestamp, entity_id, event_type.
Use get_logger() in all modules for aggregation-friendly output.
"""

from backend_paywatch.paywatch_logging.logger import bind_entity, get_logger, short

__all__ = ["bind_entity", "get_logger", "short"]
