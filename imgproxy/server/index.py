import os
from contextlib import asynccontextmanager
from logging import Logger
from pathlib import Path
from typing import Any, AsyncGenerator, Optional
from urllib import parse

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response

from imgproxy.cachegate.index import CacheGate, CacheLock
from imgproxy.config import CacheMode, Config
from imgproxy.errors import ImgProxyError
from imgproxy.janitor.index import Janitor
from imgproxy.jsonlog import get_logger, init_logging, request_context
from imgproxy.locate.index import ImageRequest, ObjectLocator, ResolvedLocation
from imgproxy.transform.index import Rendition, Transformer
from imgproxy.typing import HttpPath, LogContext


def new_client(config: Config) -> httpx.Client:
  timeout = None if config.origin_timeout <= 0 else config.origin_timeout
  return httpx.Client(timeout=timeout, follow_redirects=True)


class ImgServer:

  def __init__(
      self,
      log: Logger,
      config: Config,
      client: httpx.Client,
      lock: Optional[CacheLock] = None,
  ):
    self.log = log
    self.config = config
    self.lock = CacheLock() if lock is None else lock
    self.locator = ObjectLocator(config)
    self.gate = CacheGate(log, client, self.lock, Path(config.incoming_dir))
    self.transformer = Transformer(log)
    self.janitor = (
        Janitor(log, config, self.lock) if config.cache_mode == CacheMode.CACHE_TO_DISK else None)

  def log_debug(self, message: str, context: LogContext, dict: dict[str, Any]) -> None:
    self.log.debug({'message': message, **context, **dict})

  def log_warning(self, message: str, context: LogContext, dict: dict[str, Any]) -> None:
    self.log.warning({'message': message, **context, **dict})

  def log_error(self, message: str, context: LogContext, dict: dict[str, Any]) -> None:
    self.log.error({'message': message, **context, **dict})

  def source(self, loc: ResolvedLocation) -> bytes:
    match self.config.cache_mode:
      case CacheMode.ALWAYS_FETCH:
        return self.gate.fetch(loc)
      case CacheMode.CACHE_TO_DISK:
        return self.gate.ensure_local(loc)
      case _:
        raise Exception('system error')

  def process(self, path: HttpPath, qstr: str) -> Rendition:
    context: LogContext = {'path': str(path), 'qstr': qstr}

    try:
      with request_context(context):
        req = ImageRequest.from_query(path, parse.parse_qs(qstr))
        loc = self.locator.resolve(req)
        raw = self.source(loc)
        rendition = self.transformer.transform(raw, req)
    except ImgProxyError as e:
      self.log_warning(
          'failed to process', context, {
              'reason': str(e),
              'error': type(e).__name__,
              'status': int(e.status),
          })
      raise

    self.log_debug(
        'responded', context, {
            'local_path': loc.local_path,
            'content_type': rendition.content_type,
            'img_size': len(rendition.body),
            'vips_us': rendition.vips_us,
        })
    return rendition


def create_app(
    config: Config,
    client: Optional[httpx.Client] = None,
    log: Optional[Logger] = None,
) -> FastAPI:
  log = get_logger() if log is None else log
  owns_client = client is None
  http_client = new_client(config) if client is None else client
  server = ImgServer(log, config, http_client)

  @asynccontextmanager
  async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    if server.janitor is not None:
      server.janitor.start()
    try:
      yield
    finally:
      if server.janitor is not None:
        server.janitor.stop()
      if owns_client:
        http_client.close()

  app = FastAPI(lifespan=lifespan)
  app.state.server = server

  @app.get('/favicon.ico')
  def favicon() -> Response:
    if not Path(config.favicon_path).is_file():
      return PlainTextResponse('Not Found', status_code=404)
    return FileResponse(config.favicon_path, media_type='image/x-icon')

  @app.get('/{path:path}')
  def transform(path: str, request: Request) -> Response:
    try:
      rendition = server.process(HttpPath(f'/{path}'), request.url.query)
    except ImgProxyError as e:
      return PlainTextResponse(str(e), status_code=e.status)
    except Exception as e:
      server.log_error(
          'error during process()', {
              'path': f'/{path}',
              'qstr': request.url.query,
          }, {'reason': str(e)})
      return PlainTextResponse('Internal Server Error', status_code=500)

    return Response(content=rendition.body, media_type=rendition.content_type)

  return app


def main() -> None:
  init_logging()
  app = create_app(Config.from_env())
  uvicorn.run(
      app,
      host=os.environ.get('IMGPROXY_HOST', '0.0.0.0'),
      port=int(os.environ.get('IMGPROXY_PORT', '8080')),
      log_config=None)
