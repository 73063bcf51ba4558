import logging
from logging import Logger
from typing import Callable

import pytest
from pyvips import Image  # type: ignore

from imgproxy.config import Config

STAGING_ROOT = 'baleomol-staging'
PRODUCTION_ROOT = 'baleomol-production'
ORIGIN_BASE_URL = 'https://images.example.com/'

ImageFactory = Callable[..., bytes]


@pytest.fixture
def logger() -> Logger:
  log = logging.getLogger('imgproxy-test')
  log.setLevel(logging.DEBUG)
  return log


@pytest.fixture
def config(tmp_path) -> Config:
  return Config(
      staging_root=STAGING_ROOT,
      production_root=PRODUCTION_ROOT,
      origin_base_url=ORIGIN_BASE_URL,
      cache_dir=str(tmp_path))


@pytest.fixture
def make_image() -> ImageFactory:

  def fn(width: int, height: int, extension: str = '.png', alpha: bool = False) -> bytes:
    pixel = [200, 120, 40, 128] if alpha else [200, 120, 40]
    image = Image.black(width, height, bands=len(pixel)).new_from_image(pixel).copy(
        interpretation='srgb')
    return image.write_to_buffer(extension)

  return fn
