import dataclasses
from typing import Optional, Tuple
from urllib import parse

from imgproxy.config import Config
from imgproxy.errors import BadRequest
from imgproxy.typing import HttpPath, LocalPath, ObjectKey


def first_value(qs: dict[str, list[str]], name: str) -> str:
  if name not in qs or len(qs[name]) == 0:
    return ''
  return qs[name][0]


def split_path(path: HttpPath) -> Tuple[str, ObjectKey]:
  parts = path.lstrip('/').split('/')
  if len(parts) < 2:
    raise BadRequest('Image path is required')

  bucket_alias = parts[0]
  segments = parts[1:]
  if bucket_alias == '':
    raise BadRequest('Bucket is required')
  if bucket_alias.startswith('.'):
    raise BadRequest(f'invalid bucket: {path}')
  if any(s in ['.', '..'] for s in segments):
    raise BadRequest(f'invalid object key: {path}')

  object_key = ObjectKey('/'.join(segments))
  if object_key == '':
    raise BadRequest('Image path is required')

  return bucket_alias, object_key


@dataclasses.dataclass(eq=True, frozen=True)
class ImageRequest:
  bucket_alias: str
  object_key: ObjectKey
  width: str = ''
  height: str = ''
  w: str = ''
  h: str = ''
  requested_format: Optional[str] = None
  watermark_requested: bool = False

  @classmethod
  def from_query(cls, path: HttpPath, qs: dict[str, list[str]]) -> 'ImageRequest':
    bucket_alias, object_key = split_path(path)
    fmt = first_value(qs, 'format')

    return cls(
        bucket_alias=bucket_alias,
        object_key=object_key,
        width=first_value(qs, 'width'),
        height=first_value(qs, 'height'),
        w=first_value(qs, 'w'),
        h=first_value(qs, 'h'),
        requested_format=None if fmt == '' else fmt,
        watermark_requested=first_value(qs, 'watermark') == 'true')


@dataclasses.dataclass(eq=True, frozen=True)
class ResolvedLocation:
  physical_bucket_root: str
  object_key: ObjectKey
  local_path: LocalPath
  origin_url: str


class ObjectLocator:

  def __init__(self, config: Config):
    self.config = config
    self.bucket_roots = config.bucket_roots

  def physical_root(self, bucket_alias: str) -> str:
    # Unknown aliases name the physical root directly.
    return self.bucket_roots.get(bucket_alias.lower(), bucket_alias)

  def resolve(self, req: ImageRequest) -> ResolvedLocation:
    root = self.physical_root(req.bucket_alias)

    return ResolvedLocation(
        physical_bucket_root=root,
        object_key=req.object_key,
        local_path=LocalPath(f'{self.config.local_root(root)}/{req.object_key}'),
        origin_url=f'{self.config.origin_base_url}{root}/{parse.quote(req.object_key)}')

  def locate(self, path: HttpPath) -> ResolvedLocation:
    return self.resolve(ImageRequest.from_query(path, {}))
