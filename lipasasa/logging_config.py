import logging

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s [%(provider)s:%(correlation_id)s] %(message)s"
)


class EndpointFilter(logging.Filter):
    """Filter out noisy health check access logs."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging filter
        return "GET /health" not in record.getMessage()


class PaymentContextFilter(logging.Filter):
    """Give every record the payment context fields used by ``LOG_FORMAT``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        if not hasattr(record, "provider"):
            record.provider = "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        handler.addFilter(PaymentContextFilter())
    logging.getLogger("uvicorn.access").addFilter(EndpointFilter())


def payment_logger(
    logger: logging.Logger, correlation_id: str | None, provider: str | None
) -> logging.LoggerAdapter:
    """Bind a correlation id and provider to ``logger`` for one payment flow."""
    return logging.LoggerAdapter(
        logger,
        {"correlation_id": correlation_id or "-", "provider": provider or "-"},
    )
