"""Structured logging configuration for deckrag."""

import logging
from typing import Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging for pipeline audit events."""

    # Set log level
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_ingestion_event(
    logger: structlog.BoundLogger,
    document_id: str,
    strategy: str,
    pages: int,
    chunks_created: int,
    embedding_model: str,
    processing_time_ms: float
) -> None:
    """Log a completed document ingestion for the audit trail."""
    logger.info(
        "document_ingested",
        document_id=document_id,
        strategy=strategy,
        pages=pages,
        chunks_created=chunks_created,
        embedding_model=embedding_model,
        processing_time_ms=processing_time_ms,
        event_type="document_ingestion"
    )


def log_pipeline_failure(
    logger: structlog.BoundLogger,
    document_id: str,
    step: str,
    error_type: str,
    error_message: str,
    processing_time_ms: float
) -> None:
    """Log a pipeline run that ended with the document marked failed."""
    logger.error(
        "document_ingestion_failed",
        document_id=document_id,
        step=step,
        error_type=error_type,
        error_message=error_message,
        processing_time_ms=processing_time_ms,
        event_type="document_ingestion"
    )


def log_embedding_batch(
    logger: structlog.BoundLogger,
    batch_number: int,
    batch_size: int,
    model: str,
    truncated: int,
    document_id: Optional[str] = None
) -> None:
    """Log one embedding request sent to the external service."""
    logger.info(
        "embedding_batch_completed",
        batch_number=batch_number,
        batch_size=batch_size,
        model=model,
        truncated=truncated,
        document_id=document_id,
        event_type="embedding_batch"
    )
