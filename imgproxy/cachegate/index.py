import contextlib
import os
import threading
import time
from concurrent.futures import Future
from logging import Logger
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Generator, Iterator, Optional

import httpx

from imgproxy.errors import (
    FetchFailed,
    OriginNotFound,
    ReadFailed,
    WriteFailed
)
from imgproxy.locate.index import ResolvedLocation
from imgproxy.typing import LocalPath


class CacheLock:
  """Read/write lock over the local cache tree.

  Requests hold the shared side while they check and read a cache entry or
  move a finished download into place. The janitor takes the exclusive side
  to sweep. Waiting writers block new readers so that a sweep is not postponed
  forever by steady traffic. Neither side is reentrant.
  """

  def __init__(self) -> None:
    self._cond = threading.Condition()
    self._readers = 0
    self._writer = False
    self._writers_waiting = 0

  @contextlib.contextmanager
  def shared(self) -> Generator[None, None, None]:
    with self._cond:
      while self._writer or 0 < self._writers_waiting:
        self._cond.wait()
      self._readers += 1
    try:
      yield
    finally:
      with self._cond:
        self._readers -= 1
        if self._readers == 0:
          self._cond.notify_all()

  @contextlib.contextmanager
  def exclusive(self) -> Generator[None, None, None]:
    with self._cond:
      self._writers_waiting += 1
      try:
        while self._writer or 0 < self._readers:
          self._cond.wait()
      finally:
        self._writers_waiting -= 1
      self._writer = True
    try:
      yield
    finally:
      with self._cond:
        self._writer = False
        self._cond.notify_all()


def is_cached(path: Path) -> bool:
  try:
    return path.is_file() and 0 < path.stat().st_size
  except OSError:
    return False


class CacheGate:
  """Serves origin objects through the local cache tree.

  Origin bodies are streamed into a staging directory outside the bucket roots
  without holding the cache lock. The shared side is taken only to read a hit
  and to move a finished download into place, so a slow origin never holds
  up a sweep or the requests queued behind it.
  """

  def __init__(self, log: Logger, client: httpx.Client, lock: CacheLock, incoming_dir: Path):
    self.log = log
    self.client = client
    self.lock = lock
    self.incoming_dir = incoming_dir
    self.in_flight: dict[LocalPath, Future[bytes]] = {}
    self.in_flight_lock = threading.Lock()

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({'message': message, **dict})

  def fetch(self, loc: ResolvedLocation) -> bytes:
    start_ns = time.time_ns()
    try:
      res = self.client.get(loc.origin_url)
    except httpx.HTTPError as e:
      raise FetchFailed(f'Error fetching image: {e}') from e

    if not res.is_success:
      raise OriginNotFound(f'origin returned {res.status_code}: {loc.origin_url}')

    self.log_debug(
        'fetched', {
            'url': loc.origin_url,
            'size': len(res.content),
            'fetch_us': (time.time_ns() - start_ns) // 1000,
        })
    return res.content

  def read(self, path: Path) -> bytes:
    try:
      return path.read_bytes()
    except OSError as e:
      raise ReadFailed(f'Error reading {path}: {e}') from e

  def read_cached(self, loc: ResolvedLocation) -> Optional[bytes]:
    path = Path(loc.local_path)
    with self.lock.shared():
      if not is_cached(path):
        return None
      self.log_debug('cache hit', {'local_path': loc.local_path})
      return self.read(path)

  def persist(self, path: Path, chunks: Iterator[bytes]) -> bytes:
    try:
      self.incoming_dir.mkdir(parents=True, exist_ok=True)
      with NamedTemporaryFile(dir=self.incoming_dir, suffix='.part', delete_on_close=False) as tmp:
        for chunk in chunks:
          tmp.write(chunk)
        tmp.close()

        with self.lock.shared():
          path.parent.mkdir(parents=True, exist_ok=True)
          os.replace(tmp.name, path)
          return self.read(path)
    except OSError as e:
      raise WriteFailed(f'Error writing {path}: {e}') from e

  def fetch_and_persist(self, loc: ResolvedLocation) -> bytes:
    start_ns = time.time_ns()

    try:
      with self.client.stream('GET', loc.origin_url) as res:
        if not res.is_success:
          raise OriginNotFound(f'origin returned {res.status_code}: {loc.origin_url}')
        body = self.persist(Path(loc.local_path), res.iter_bytes())
    except httpx.HTTPError as e:
      raise FetchFailed(f'Error fetching image: {e}') from e

    self.log_debug(
        'persisted', {
            'url': loc.origin_url,
            'local_path': loc.local_path,
            'size': len(body),
            'fetch_us': (time.time_ns() - start_ns) // 1000,
        })
    return body

  def ensure_local(self, loc: ResolvedLocation) -> bytes:
    body = self.read_cached(loc)
    if body is not None:
      return body

    with self.in_flight_lock:
      future = self.in_flight.get(loc.local_path)
      owner = future is None
      if future is None:
        future = Future()
        self.in_flight[loc.local_path] = future

    if not owner:
      self.log_debug('waiting for in-flight fetch', {'local_path': loc.local_path})
      return future.result()

    try:
      # Another owner may have finished between the check and the registration.
      body = self.read_cached(loc)
      if body is None:
        self.log_debug('cache miss', {'local_path': loc.local_path})
        body = self.fetch_and_persist(loc)
    except Exception as e:
      future.set_exception(e)
      raise
    else:
      future.set_result(body)
    finally:
      with self.in_flight_lock:
        del self.in_flight[loc.local_path]

    return body
