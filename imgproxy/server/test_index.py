import dataclasses
from logging import Logger
from pathlib import Path
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from pyvips import Image  # type: ignore

from imgproxy.config import CacheMode, Config
from imgproxy.conftest import ORIGIN_BASE_URL, PRODUCTION_ROOT, ImageFactory

from .index import create_app


class Origin:

  def __init__(self) -> None:
    self.objects: dict[str, bytes] = {}
    self.requested: list[str] = []

  def handler(self, request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    self.requested.append(url)
    if url not in self.objects:
      return httpx.Response(404, content=b'Not Found')
    return httpx.Response(200, content=self.objects[url])


@pytest.fixture
def origin(make_image: ImageFactory) -> Origin:
  origin = Origin()
  origin.objects[f'{ORIGIN_BASE_URL}{PRODUCTION_ROOT}/img/pic.png'] = make_image(200, 100)
  origin.objects[f'{ORIGIN_BASE_URL}baleomol-staging/uploads/charge_submission/a.png'] = (
      make_image(200, 100))
  origin.objects[f'{ORIGIN_BASE_URL}baleomol-staging/broken.jpg'] = b'\xff\xd8 broken'
  return origin


def new_test_client(config: Config, origin: Origin, logger: Logger) -> TestClient:
  http = httpx.Client(transport=httpx.MockTransport(origin.handler))
  return TestClient(create_app(config, client=http, log=logger))


@pytest.fixture
def client(config: Config, origin: Origin, logger: Logger) -> Generator[TestClient, None, None]:
  with new_test_client(config, origin, logger) as client:
    yield client


def size_of(body: bytes) -> tuple[int, int]:
  image = Image.new_from_buffer(body, '')
  return (image.width, image.height)


def test_resize_and_convert(client: TestClient, origin: Origin, config: Config) -> None:
  res = client.get('/production/img/pic.png?w=50&format=webp')

  assert 200 == res.status_code
  assert 'image/webp' == res.headers['content-type']
  assert (50, 25) == size_of(res.content)
  assert Path(config.cache_dir, PRODUCTION_ROOT, 'img', 'pic.png').is_file()
  assert [f'{ORIGIN_BASE_URL}{PRODUCTION_ROOT}/img/pic.png'] == origin.requested


def test_cache_is_reused(client: TestClient, origin: Origin) -> None:
  assert 200 == client.get('/production/img/pic.png').status_code
  res = client.get('/Production/img/pic.png?width=400')

  assert 200 == res.status_code
  assert 'image/png' == res.headers['content-type']
  assert (400, 200) == size_of(res.content)
  assert 1 == len(origin.requested)


def test_short_form_takes_precedence(client: TestClient) -> None:
  res = client.get('/production/img/pic.png?width=400&height=10&w=100&h=20')

  assert 200 == res.status_code
  assert (100, 20) == size_of(res.content)


@pytest.mark.parametrize(
    'path, status', [
        ('/staging', 400),
        ('/staging/', 400),
        ('/staging/missing.jpg', 404),
        ('/staging/broken.jpg', 500),
        ('/production/img/pic.png?format=gif', 500),
    ],
    ids=['no_key', 'empty_key', 'origin_not_found', 'broken', 'unsupported_format'])
def test_errors(client: TestClient, path: str, status: int) -> None:
  res = client.get(path)

  assert status == res.status_code
  assert res.headers['content-type'].startswith('text/plain')
  assert '' != res.text


def test_origin_not_found_is_not_cached(client: TestClient, origin: Origin) -> None:
  assert 404 == client.get('/staging/missing.jpg').status_code
  assert 404 == client.get('/staging/missing.jpg').status_code
  assert 2 == len(origin.requested)


@pytest.mark.parametrize(
    'qstr', ['', '?watermark=false', '?watermark=true'], ids=['absent', 'false', 'true'])
def test_protected_key_is_watermarked(client: TestClient, qstr: str) -> None:
  res = client.get(f'/staging/uploads/charge_submission/a.png{qstr}')

  assert 200 == res.status_code
  assert 'image/jpeg' == res.headers['content-type']
  assert (200, 100) == size_of(res.content)


def test_watermark_flag(client: TestClient) -> None:
  res = client.get('/production/img/pic.png?watermark=true')

  assert 200 == res.status_code
  assert 'image/jpeg' == res.headers['content-type']


def test_always_fetch(config: Config, origin: Origin, logger: Logger) -> None:
  config = dataclasses.replace(config, cache_mode=CacheMode.ALWAYS_FETCH)

  with new_test_client(config, origin, logger) as client:
    assert client.app.state.server.janitor is None
    for _ in range(2):
      res = client.get('/production/img/pic.png?w=400')
      assert 200 == res.status_code
      assert (400, 200) == size_of(res.content)

  assert 2 == len(origin.requested)
  assert [] == list(Path(config.cache_dir).iterdir())


def test_janitor_runs_with_app(config: Config, origin: Origin, logger: Logger) -> None:
  with new_test_client(config, origin, logger) as client:
    janitor = client.app.state.server.janitor
    assert janitor is not None
    assert janitor.thread is not None
    assert janitor.thread.is_alive()

  assert janitor.thread is None


def test_favicon(config: Config, origin: Origin, logger: Logger, tmp_path: Path) -> None:
  with new_test_client(config, origin, logger) as client:
    assert 404 == client.get('/favicon.ico').status_code

  favicon = tmp_path / 'favicon.ico'
  favicon.write_bytes(b'\x00\x00\x01\x00')
  config = dataclasses.replace(config, favicon_path=str(favicon))

  with new_test_client(config, origin, logger) as client:
    res = client.get('/favicon.ico')
    assert 200 == res.status_code
    assert b'\x00\x00\x01\x00' == res.content

  assert [] == origin.requested
