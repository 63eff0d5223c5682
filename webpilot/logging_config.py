import logging
import sys
import locale

from dotenv import load_dotenv

load_dotenv()

from webpilot.config import CONFIG
from webpilot.timing import now_utc_iso, uptime_seconds, process_start_utc_iso


def addLoggingLevel(levelName, levelNum, methodName=None):
	"""
	Register a new logging level on the `logging` module and the logger class.

	`levelName` becomes an attribute of `logging` with value `levelNum`, and
	`methodName` (default: `levelName.lower()`) becomes a convenience method on
	both `logging` and `logging.getLoggerClass()`.

	Raises `AttributeError` if either name is already taken.

	Example
	-------
	>>> addLoggingLevel('RESULT', 35)
	>>> logging.getLogger('webpilot').result('run finished')
	"""
	if not methodName:
		methodName = levelName.lower()

	if hasattr(logging, levelName):
		raise AttributeError(f'{levelName} already defined in logging module')
	if hasattr(logging, methodName):
		raise AttributeError(f'{methodName} already defined in logging module')
	if hasattr(logging.getLoggerClass(), methodName):
		raise AttributeError(f'{methodName} already defined in logger class')

	def logForLevel(self, message, *args, **kwargs):
		if self.isEnabledFor(levelNum):
			self._log(levelNum, message, args, **kwargs)

	def logToRoot(message, *args, **kwargs):
		logging.log(levelNum, message, *args, **kwargs)

	logging.addLevelName(levelNum, levelName)
	setattr(logging, levelName, levelNum)
	setattr(logging.getLoggerClass(), methodName, logForLevel)
	setattr(logging, methodName, logToRoot)


class SafeStreamHandler(logging.StreamHandler):
	"""Stream handler that replaces characters the console cannot encode.

	Summary reports carry emoji status markers; cp1252 consoles would otherwise
	raise UnicodeEncodeError from inside the logging call.
	"""

	def emit(self, record):  # type: ignore[override]
		try:
			msg = self.format(record)
			stream = self.stream
			try:
				stream.write(msg + self.terminator)
			except UnicodeEncodeError:
				enc = getattr(stream, "encoding", None) or locale.getpreferredencoding(False) or "utf-8"
				sanitized = msg.encode(enc, errors='replace').decode(enc, errors='replace')
				stream.write(sanitized + self.terminator)
			self.flush()
		except Exception:
			self.handleError(record)


class WebPilotFormatter(logging.Formatter):
	"""Adds UTC time, process uptime and run context to every record."""

	def format(self, record):
		try:
			record.utc = now_utc_iso()
			record.uptime = f"{uptime_seconds():.3f}s"
		except Exception:
			record.utc = ""
			record.uptime = ""
		run_id = getattr(record, 'run_id', None)
		step = getattr(record, 'step', None)
		record.run_ctx = f" [{run_id}:{step}]" if run_id is not None else ""
		return super().format(record)


def setup_logging(stream=None, log_level=None, force_setup=False):
	"""Setup logging configuration for webpilot.

	Args:
		stream: Output stream for logs (default: sys.stdout).
		log_level: Override log level (default: uses CONFIG.WEBPILOT_LOGGING_LEVEL)
		force_setup: Force reconfiguration even if handlers already exist
	"""
	try:
		addLoggingLevel('RESULT', 35)
	except AttributeError:
		pass

	log_type = log_level or CONFIG.WEBPILOT_LOGGING_LEVEL

	if logging.getLogger().hasHandlers() and not force_setup:
		return logging.getLogger('webpilot')

	root = logging.getLogger()
	root.handlers = []

	console = SafeStreamHandler(stream or sys.stdout)

	if log_type == 'result':
		console.setLevel('RESULT')
		console.setFormatter(WebPilotFormatter('%(message)s'))
	else:
		console.setFormatter(WebPilotFormatter('%(levelname)-8s [%(name)s]%(run_ctx)s %(utc)s (+%(uptime)s) %(message)s'))

	root.addHandler(console)

	if log_type == 'result':
		root.setLevel('RESULT')
	elif log_type == 'debug':
		root.setLevel(logging.DEBUG)
	else:
		root.setLevel(logging.INFO)

	webpilot_logger = logging.getLogger('webpilot')
	webpilot_logger.propagate = False
	webpilot_logger.handlers = []
	webpilot_logger.addHandler(console)
	webpilot_logger.setLevel(root.level)

	webpilot_logger.debug(f"Logging initialized at {now_utc_iso()} (process_start={process_start_utc_iso()})")

	# Provider SDKs are chatty at INFO
	third_party_loggers = [
		'httpx',
		'httpcore',
		'urllib3',
		'asyncio',
		'openai',
		'anthropic._base_client',
		'google_genai',
		'groq',
	]
	for logger_name in third_party_loggers:
		third_party = logging.getLogger(logger_name)
		third_party.setLevel(logging.ERROR)
		third_party.propagate = False

	return webpilot_logger
