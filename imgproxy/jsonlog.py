import contextlib
import datetime
import logging
import sys
from contextvars import ContextVar
from logging import Logger
from typing import Any, Generator, Optional

from pythonjsonlogger.json import JsonFormatter

import imgproxy
from imgproxy.typing import LogContext

LOGGER_NAME = 'imgproxy'

current_context: ContextVar[Optional[LogContext]] = ContextVar('current_context', default=None)


@contextlib.contextmanager
def request_context(context: LogContext) -> Generator[None, None, None]:
  """Tags every record logged inside the block with the request's path and query."""
  token = current_context.set(context)
  try:
    yield
  finally:
    current_context.reset(token)


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
    log_record['level'] = record.levelname
    log_record['version'] = imgproxy.version
    log_record['thread'] = record.threadName

    # Fields given with the message win over the request context.
    context = current_context.get()
    if context is not None:
      log_record.update(context)

    super().add_fields(log_record, record, message_dict)


def get_logger() -> Logger:
  return logging.getLogger(LOGGER_NAME)


def init_logging(level: int = logging.DEBUG) -> Logger:
  logging.getLogger('httpx').setLevel(logging.WARNING)
  logging.getLogger('httpcore').setLevel(logging.WARNING)

  log = get_logger()
  log.setLevel(level)
  for h in log.handlers[:]:
    log.removeHandler(h)

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(level)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log
