"""JSON logging for CA reconciliation.

Every line carries timestamp, level, message, funcName and lineno. Calls made
on behalf of one CA, record or dependent group pass that context through
``extra`` using the names in ``CONTEXT_FIELDS``::

    LOGGER.warning("Renewal postponed", extra={"ca": kind.name, "decision": "postponed"})
"""

import logging

from pythonjsonlogger import jsonlogger

LOGGER_NAME = "fleet_ca"

BASE_FIELDS = frozenset({"timestamp", "level", "message", "exc_info", "funcName", "lineno"})

# ca: CA kind name, decision: renewal type value, record: "<namespace>/<name>",
# group: dependent group name, replica: replica index within the group
CONTEXT_FIELDS = frozenset({"ca", "decision", "record", "group", "replica"})


class FleetJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter emitting the base fields plus whichever context fields were passed."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        if "levelname" in log_record:
            log_record["level"] = log_record.pop("levelname")

        for key in [key for key in log_record if key not in BASE_FIELDS | CONTEXT_FIELDS]:
            log_record.pop(key)


def set_level(level: str) -> None:
    """Set the threshold of the fleet_ca logger, e.g. ``"DEBUG"``.

    Raises:
        ValueError: If ``level`` is not a logging level name
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level {level!r}")
    LOGGER.setLevel(numeric)


def _setup_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)

    # module reloads must not stack handlers
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(
        FleetJsonFormatter(
            fmt="%(timestamp)s %(levelname)s %(funcName)s %(lineno)d %(message)s",
            timestamp=True,
        )
    )

    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


LOGGER = _setup_logger()
