"""Structured logging configuration for Loki integration."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from pythonjsonlogger import jsonlogger

from quality_pipeline.config import settings

# Context keys attached by get_logger() that are promoted to top-level JSON fields
RUN_CONTEXT_FIELDS = ("run_id", "kind", "report_id", "block")


class PipelineJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that tags every record with pipeline run context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        log_record['service'] = "quality-pipeline"

        for field in RUN_CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value


def _resolve_logs_dir(base_dir: str | Path | None) -> Path:
    logs_dir = Path(settings.log_dir)
    if not logs_dir.is_absolute():
        logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def setup_logging(base_dir: str | Path | None = None):
    """Configure root logging.

    Operators get plain text on stdout (or JSON with LOG_JSON_CONSOLE=true);
    pipeline.log and error.log are JSON lines picked up by Promtail.
    """
    logs_dir = _resolve_logs_dir(base_dir)
    json_formatter = PipelineJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    if settings.log_json_console:
        console_handler.setFormatter(json_formatter)
    else:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s [%(name)s] %(message)s")
        )
    root_logger.addHandler(console_handler)

    for filename, level in (("pipeline.log", logging.DEBUG), ("error.log", logging.ERROR)):
        file_handler = logging.FileHandler(logs_dir / filename)
        file_handler.setLevel(level)
        file_handler.setFormatter(json_formatter)
        root_logger.addHandler(file_handler)

    # Per-request noise from the HTTP client used by the coherence scorer
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger


class RunContextAdapter(logging.LoggerAdapter):
    """Logger adapter that merges run context into every record."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> RunContextAdapter:
    """
    Get a logger bound to run context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. run_id='ab12', kind='dedup-sweep'
    """
    return RunContextAdapter(logging.getLogger(name), context)
