import shutil
import threading
from logging import Logger
from pathlib import Path
from typing import Optional

from imgproxy.cachegate.index import CacheLock
from imgproxy.config import Config


def remove_children(root: Path) -> int:
  removed = 0
  for child in root.iterdir():
    if child.is_dir() and not child.is_symlink():
      shutil.rmtree(child)
    else:
      child.unlink()
    removed += 1
  return removed


class Janitor:
  """Periodically empties the local cache trees.

  Every tick removes everything below each configured bucket root. The sweep
  runs under the exclusive side of the cache lock, so requests never read
  from a tree that is being deleted. Failures are logged per root and never
  stop the loop.
  """

  def __init__(self, log: Logger, config: Config, lock: CacheLock):
    self.log = log
    self.interval = config.janitor_interval
    self.roots = [Path(config.local_root(r)) for r in config.bucket_roots.values()]
    self.lock = lock
    self.stop_event = threading.Event()
    self.thread: Optional[threading.Thread] = None

  def sweep(self) -> None:
    with self.lock.exclusive():
      for root in self.roots:
        if not root.is_dir():
          self.log.debug({'message': 'cache root not found', 'root': str(root)})
          continue

        try:
          removed = remove_children(root)
        except OSError as e:
          self.log.error({
              'message': 'failed to clean cache root',
              'root': str(root),
              'reason': str(e),
          })
          continue

        self.log.info({'message': 'cleaned cache root', 'root': str(root), 'removed': removed})

  def run(self) -> None:
    while not self.stop_event.wait(timeout=self.interval):
      try:
        self.sweep()
      except Exception as e:
        self.log.error({'message': 'error during sweep()', 'reason': str(e)})

  def start(self) -> None:
    if self.thread is not None:
      return
    self.stop_event.clear()
    self.thread = threading.Thread(target=self.run, name='imgproxy-janitor', daemon=True)
    self.thread.start()
    self.log.debug({'message': 'janitor started', 'interval': self.interval})

  def stop(self) -> None:
    if self.thread is None:
      return
    self.stop_event.set()
    self.thread.join()
    self.thread = None
