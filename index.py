from fastapi import FastAPI

from imgproxy.config import Config
from imgproxy.jsonlog import init_logging
from imgproxy.server.index import create_app, main

logger = init_logging()


def create_default_app() -> FastAPI:
  # uvicorn index:create_default_app --factory
  return create_app(Config.from_env(), log=logger)


if __name__ == '__main__':
  main()
