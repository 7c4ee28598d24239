# logger.py

import logging

LOG_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "request_id": "%(request_id)s"}'


class RequestIdFilter(logging.Filter):
    """ Make sure every record carries a request_id so the JSON format never breaks. """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = "N/A"
        return True


# Named logger instance with structured JSON output
logger = logging.getLogger("vdeck_api")
logger.setLevel(logging.INFO)
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
    _handler.addFilter(RequestIdFilter())
    logger.addHandler(_handler)


def log_info(message: str, request_id: str = "N/A"):
    logger.info(message, extra={"request_id": request_id})

def log_error(message: str, request_id: str = "N/A", exc_info: bool = False):
    logger.error(message, extra={"request_id": request_id}, exc_info=exc_info)

def log_debug(message: str, request_id: str = "N/A"):
    logger.debug(message, extra={"request_id": request_id})

def log_warning(message: str, request_id: str = "N/A"):
    logger.warning(message, extra={"request_id": request_id})
