from http import HTTPStatus


class ConfigError(Exception):
  pass


class ImgProxyError(Exception):
  status: int = HTTPStatus.INTERNAL_SERVER_ERROR


class BadRequest(ImgProxyError):
  status = HTTPStatus.BAD_REQUEST


class OriginNotFound(ImgProxyError):
  status = HTTPStatus.NOT_FOUND


class FetchFailed(ImgProxyError):
  pass


class WriteFailed(ImgProxyError):
  pass


class MetadataError(ImgProxyError):
  pass


class WatermarkError(ImgProxyError):
  pass


class UnsupportedFormat(ImgProxyError):
  pass


class ProcessError(ImgProxyError):
  pass


class ReadFailed(ImgProxyError):
  pass
