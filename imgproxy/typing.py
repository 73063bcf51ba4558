from typing import NewType, TypedDict

HttpPath = NewType('HttpPath', str)
ObjectKey = NewType('ObjectKey', str)
LocalPath = NewType('LocalPath', str)


class LogContext(TypedDict):
  path: str
  qstr: str
