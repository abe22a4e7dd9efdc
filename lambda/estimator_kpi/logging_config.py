"""
Structured logging for the Lambda.

CloudWatch stamps every line with its own timestamp, so the JSON lines carry
none. They carry the invocation's aws_request_id instead, set per call by
bind_request().
"""
import logging
import json
import sys


class RequestIdFilter(logging.Filter):
    """Copies the current invocation's request id onto every record."""

    def __init__(self):
        super().__init__()
        self.aws_request_id = None

    def filter(self, record):
        record.aws_request_id = self.aws_request_id
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line for CloudWatch Logs Insights."""
    def format(self, record):
        log_entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("aws_request_id", "estimate_id", "duration_ms"):
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


_request_filter = RequestIdFilter()


def bind_request(context) -> None:
    """Tags following log lines with the request id of a Lambda context (None clears it)."""
    _request_filter.aws_request_id = getattr(context, "aws_request_id", None)


def setup_logging(level: str = "INFO", json_output: bool = True):
    """Replaces the runtime's root handler with one writing to stdout."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_request_filter)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(aws_request_id)s [%(name)s] %(levelname)s: %(message)s"
        ))

    root.handlers = [handler]

    # boto is chatty at INFO
    for name in ["boto3", "botocore", "urllib3"]:
        logging.getLogger(name).setLevel(logging.WARNING)
