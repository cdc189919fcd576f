import logging

from rich.logging import RichHandler

LOGGER_NAME = "inbox_automation"
LOG_FORMAT = "[%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
	"""Attach a rich console handler to the package logger. Safe to call twice."""
	numeric = logging.getLevelName(level.upper())
	if not isinstance(numeric, int):
		numeric = logging.INFO

	logger = logging.getLogger(LOGGER_NAME)
	logger.setLevel(numeric)
	if not logger.handlers:
		handler = RichHandler(rich_tracebacks=True, show_path=False)
		handler.setFormatter(logging.Formatter(LOG_FORMAT))
		logger.addHandler(handler)
	# googleapiclient logs every discovery-cache miss at WARNING
	logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
	return logger
