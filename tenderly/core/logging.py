import logging
import sys
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger

# Keys whose values identify a patient and must never reach a log sink
PII_KEYS = {
    "name", "full_name", "first_name", "last_name", "email", "phone",
    "phone_number", "address", "dob", "date_of_birth", "symptoms",
    "detailed_symptoms", "assessment", "assessment_data", "medical_history",
    "allergies", "medications",
}

REDACTED = "[REDACTED]"


def scrub_pii(value: Any) -> Any:
    """Return a copy of ``value`` with PII-bearing keys redacted."""
    if isinstance(value, dict):
        return {
            k: (REDACTED if str(k).lower() in PII_KEYS else scrub_pii(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [scrub_pii(v) for v in value]
    return value


def pii_scrubber(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor applying scrub_pii to every event."""
    return scrub_pii(event_dict)


def setup_logging(level: str = "INFO", json_logs: bool = False):
    """Structured logging setup"""

    json_formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            pii_scrubber,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    if not any(getattr(h, "_tenderly", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(json_formatter)
        handler._tenderly = True
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    return structlog.get_logger()
