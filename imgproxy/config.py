import dataclasses
import os
from enum import Enum
from typing import Mapping, Optional

from imgproxy.errors import ConfigError

DEFAULT_ORIGIN_BASE_URL = 'https://images.baleomol.com/'
JANITOR_INTERVAL = 7 * 24 * 60 * 60
INCOMING_DIR = '.incoming'

ENV_PREFIX = 'IMGPROXY_'


class CacheMode(Enum):
  ALWAYS_FETCH = 0
  CACHE_TO_DISK = 1


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  staging_root: str
  production_root: str
  origin_base_url: str = DEFAULT_ORIGIN_BASE_URL
  cache_dir: str = ''
  cache_mode: CacheMode = CacheMode.CACHE_TO_DISK
  janitor_interval: float = JANITOR_INTERVAL
  favicon_path: str = 'favicon.ico'
  origin_timeout: float = 0.0

  @classmethod
  def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
    env = os.environ if environ is None else environ

    def get(name: str) -> str:
      return env[f'{ENV_PREFIX}{name}']

    def get_or(name: str, default: str) -> str:
      v = env.get(f'{ENV_PREFIX}{name}', '')
      return default if v == '' else v

    try:
      staging_root = get('STAGING_ROOT')
      production_root = get('PRODUCTION_ROOT')
    except KeyError as e:
      raise ConfigError(f'environment variable not found: {e}') from e

    mode = get_or('CACHE_MODE', CacheMode.CACHE_TO_DISK.name)
    try:
      cache_mode = CacheMode[mode.upper()]
    except KeyError as e:
      raise ConfigError(f'unknown cache mode: {mode}') from e

    try:
      janitor_interval = float(get_or('JANITOR_INTERVAL', str(JANITOR_INTERVAL)))
      origin_timeout = float(get_or('ORIGIN_TIMEOUT', '0'))
    except ValueError as e:
      raise ConfigError(f'invalid number: {e}') from e

    if janitor_interval <= 0:
      raise ConfigError(f'janitor interval must be positive: {janitor_interval}')

    return cls(
        staging_root=staging_root,
        production_root=production_root,
        origin_base_url=get_or('ORIGIN_BASE_URL', DEFAULT_ORIGIN_BASE_URL),
        cache_dir=get_or('CACHE_DIR', ''),
        cache_mode=cache_mode,
        janitor_interval=janitor_interval,
        favicon_path=get_or('FAVICON_PATH', 'favicon.ico'),
        origin_timeout=origin_timeout)

  @property
  def bucket_roots(self) -> dict[str, str]:
    return {
        'staging': self.staging_root,
        'production': self.production_root,
    }

  def local_root(self, bucket_root: str) -> str:
    if self.cache_dir == '':
      return bucket_root
    return f"{self.cache_dir.rstrip('/')}/{bucket_root}"

  @property
  def incoming_dir(self) -> str:
    # Downloads are staged here. It is not a bucket root so sweeps never touch it.
    return self.local_root(INCOMING_DIR)
