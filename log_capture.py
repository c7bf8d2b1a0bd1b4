import logging
import threading
from contextlib import ContextDecorator

# `extra` fields copied from log records into captured entries
CONTEXT_FIELDS = ("step", "job_id", "company_id", "attachment", "status_code")


class _EntryHandler(logging.Handler):
    def __init__(self, capture: "SubmissionLogCapture"):
        super().__init__(level=capture.level)
        self.capture = capture

    def emit(self, record: logging.LogRecord) -> None:
        if record.thread != self.capture.thread_id:
            return
        try:
            self.capture.entries.append(self.capture.to_entry(record))
        except Exception:  # pylint: disable=broad-except
            self.handleError(record)


class SubmissionLogCapture(ContextDecorator):
    """Collect the log entries emitted while one submission is processed.

    Only records from the thread that entered the context are kept, so
    submissions processed side by side never see each other's entries.
    Each entry is a dict with `severity`, `message` and `context` keys.
    """

    def __init__(self, submission_id=None, logger=None, level=logging.DEBUG):
        self.submission_id = submission_id
        self.logger = logger or logging.getLogger()
        self.level = level
        self.entries = []
        self.thread_id = None
        self._handler = None

    def to_entry(self, record):
        context = {"submission_id": self.submission_id}
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                context[name] = value
        return {
            "severity": record.levelname.lower(),
            "message": record.getMessage(),
            "context": context,
        }

    def __enter__(self):
        self.thread_id = threading.get_ident()
        self._handler = _EntryHandler(self)
        self.logger.addHandler(self._handler)
        logging.debug("SubmissionLogCapture start for submission %s", self.submission_id)
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc:
            logging.debug("SubmissionLogCapture caught exception: %s", exc)
        logging.debug("SubmissionLogCapture end for submission %s", self.submission_id)
        self.logger.removeHandler(self._handler)
        self._handler = None
        # Do not suppress exceptions
        return False
