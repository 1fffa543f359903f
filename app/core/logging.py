import logging

from app.core.config import get_settings


class SecretsFilter(logging.Filter):
    """Drop credential and agent payload fields from structured logs."""

    BLOCKED_KEYS = {"access_token", "refresh_token", "authorization", "agent_output", "raw_input"}

    def filter(self, record: logging.LogRecord) -> bool:
        for key in self.BLOCKED_KEYS:
            if hasattr(record, key):
                setattr(record, key, "[REDACTED]")
        return True


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    root = logging.getLogger()
    secrets_filter = SecretsFilter()
    root.addFilter(secrets_filter)
    # Records from named loggers only pass through handler filters.
    for handler in root.handlers:
        if not any(isinstance(existing, SecretsFilter) for existing in handler.filters):
            handler.addFilter(secrets_filter)
