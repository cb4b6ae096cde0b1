import os
import logging
import json

# LogRecord attributes that are not user-supplied extras
RESERVED_ATTRS = frozenset({
    'args', 'asctime', 'created', 'exc_info', 'exc_text', 'filename',
    'funcName', 'id', 'levelname', 'levelno', 'lineno', 'module',
    'msecs', 'message', 'msg', 'name', 'pathname', 'process',
    'processName', 'relativeCreated', 'stack_info', 'taskName', 'thread', 'threadName'
})

QUIET_LOGGERS = ('boto3', 'botocore', 'urllib3', 's3transfer')


def setup_logging(level=None):
    """
    Set up logging for the reconciler, switching to JSON output when running on AWS.

    Args:
        level: Optional log level override (default: uses LOG_LEVEL env var or INFO)
    """
    if level is None:
        level = os.environ.get('LOG_LEVEL', 'INFO')
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s [%(levelname)s] %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Lambda, ECS and other AWS runtimes set AWS_EXECUTION_ENV
    if os.environ.get('AWS_EXECUTION_ENV') is not None:
        for handler in root_logger.handlers:
            handler.setFormatter(JsonFormatter())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.debug("Logging initialized")


class JsonFormatter(logging.Formatter):
    """
    Format logs as JSON for CloudWatch Logs Insights queries.
    """

    def format(self, record):
        log_record = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'name': record.name,
            'message': record.getMessage(),
            'file': record.pathname,
            'line': record.lineno,
            'function': record.funcName
        }

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in RESERVED_ATTRS:
                log_record[key] = value

        return json.dumps(log_record, default=str)
