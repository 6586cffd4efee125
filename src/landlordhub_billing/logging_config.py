"""
Logging configuration for the LandlordHub billing service.

Provides structured logging without exposing secrets.
"""
import logging
import sys


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure application logging.

    :param log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(level)

    # Avoid stacking handlers when the app factory runs more than once (tests)
    for handler in list(logger.handlers):
        if getattr(handler, "_landlordhub", False):
            logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    console_handler._landlordhub = True
    logger.addHandler(console_handler)

    # Third-party libraries are noisy at INFO
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)


def sanitize_log_data(data: dict) -> dict:
    """
    Sanitize log data to remove sensitive information.

    :param data: Dictionary to sanitize.
    :return: Sanitized copy without secrets.
    """
    sanitized = data.copy()
    sensitive_keys = [
        "password", "token", "secret", "key", "authorization",
        "stripe_secret_key", "stripe_webhook_secret", "database_url",
    ]

    for key in sanitized:
        if any(sensitive in key.lower() for sensitive in sensitive_keys):
            sanitized[key] = "***REDACTED***"

    return sanitized
