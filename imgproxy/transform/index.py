import dataclasses
import time
from enum import Enum
from logging import Logger
from typing import Any, Optional, Tuple

import pyvips
from pyvips import Image  # type: ignore

from imgproxy.dimension.index import Size, resolve_target
from imgproxy.errors import (
    MetadataError,
    ProcessError,
    UnsupportedFormat,
    WatermarkError
)
from imgproxy.locate.index import ImageRequest

PROTECTED_KEY_SEGMENT = 'uploads/charge_submission'

WATERMARK_TEXT = 'Baleomol.com'
WATERMARK_FONT = 'sans bold 12'
WATERMARK_OPACITY = 0.8
WATERMARK_WIDTH = 120
WATERMARK_DPI = 150
WATERMARK_MARGIN = 100
WATERMARK_INK = 255.0

QUALITY = 80
COMPRESSION = 8

WHITE = 255.0


class ImageFormat(Enum):
  JPEG = 'jpeg'
  PNG = 'png'
  WEBP = 'webp'
  OTHER = 'other'

  @classmethod
  def from_loader(cls, loader: str) -> 'ImageFormat':
    if loader.startswith('jpegload'):
      return cls.JPEG
    if loader.startswith('pngload'):
      return cls.PNG
    if loader.startswith('webpload'):
      return cls.WEBP
    return cls.OTHER

  @classmethod
  def from_name(cls, name: str) -> 'ImageFormat':
    try:
      fmt = cls(name.lower())
    except ValueError:
      raise UnsupportedFormat(f'unsupported format: {name}')

    if fmt == cls.OTHER:
      raise UnsupportedFormat(f'unsupported format: {name}')

    return fmt

  def extension(self) -> str:
    if self == ImageFormat.JPEG:
      return '.jpg'
    if self == ImageFormat.PNG:
      return '.png'
    if self == ImageFormat.WEBP:
      return '.webp'
    raise UnsupportedFormat(f'unsupported format: {self.value}')

  @property
  def content_type(self) -> str:
    return f'image/{self.value}'


@dataclasses.dataclass(eq=True, frozen=True)
class ImageMetadata:
  width: int
  height: int
  format: ImageFormat

  @property
  def size(self) -> Size:
    return Size(self.width, self.height)


@dataclasses.dataclass(eq=True, frozen=True)
class TargetSpec:
  width: int
  height: int
  format: ImageFormat
  watermark: bool


@dataclasses.dataclass(frozen=True)
class Rendition:
  body: bytes
  content_type: str
  target: TargetSpec
  vips_us: int


def needs_watermark(req: ImageRequest) -> bool:
  return PROTECTED_KEY_SEGMENT in req.object_key or req.watermark_requested


def ceildiv(a: int, b: int) -> int:
  return -(a // -b)


def flatten(image: Image) -> Image:
  if not image.hasalpha():
    return image
  return image.flatten(background=[WHITE] * (image.bands - 1))


def decode(raw: bytes) -> Tuple[Image, ImageMetadata]:
  try:
    image = Image.new_from_buffer(raw, '')
    fmt = ImageFormat.from_loader(image.get('vips-loader'))
    # Sizes refer to the upright image.
    image = image.autorot()
  except pyvips.Error as e:
    raise MetadataError(f'Error decoding image: {e}') from e

  return image, ImageMetadata(image.width, image.height, fmt)


def convert_for_watermark(image: Image, fmt: ImageFormat) -> Tuple[Image, ImageFormat]:
  if fmt == ImageFormat.JPEG:
    return image, fmt

  buf = flatten(image).write_to_buffer(ImageFormat.JPEG.extension(), Q=QUALITY)
  return Image.new_from_buffer(buf, ''), ImageFormat.JPEG


def render_watermark(width: int, height: int) -> Image:
  text: Image = Image.text(
      WATERMARK_TEXT, font=WATERMARK_FONT, width=WATERMARK_WIDTH, dpi=WATERMARK_DPI)
  tile = text.embed(0, 0, text.width + WATERMARK_MARGIN, text.height + WATERMARK_MARGIN)
  mask = tile.replicate(ceildiv(width, tile.width), ceildiv(height, tile.height))
  return mask.crop(0, 0, width, height) * (WATERMARK_OPACITY / 255.0)


def apply_watermark(image: Image, fmt: ImageFormat) -> Tuple[Image, ImageFormat]:
  try:
    image, fmt = convert_for_watermark(image, fmt)
    mask = render_watermark(image.width, image.height)
    marked = (image * (1 - mask) + mask * WATERMARK_INK).cast(image.format)
  except pyvips.Error as e:
    raise WatermarkError(f'Error applying watermark: {e}') from e

  return marked, fmt


def select_format(requested: Optional[str], current: ImageFormat) -> ImageFormat:
  if requested is not None:
    return ImageFormat.from_name(requested)
  if current == ImageFormat.OTHER:
    raise UnsupportedFormat('unsupported source format')
  return current


def encode(image: Image, target: TargetSpec) -> bytes:
  try:
    resized = image.thumbnail_image(target.width, height=target.height, size='force')

    match target.format:
      case ImageFormat.JPEG:
        return flatten(resized).write_to_buffer(target.format.extension(), Q=QUALITY)
      case ImageFormat.PNG:
        return resized.write_to_buffer(target.format.extension(), compression=COMPRESSION)
      case ImageFormat.WEBP:
        return resized.write_to_buffer(target.format.extension(), Q=QUALITY)
      case _:
        raise UnsupportedFormat(f'unsupported format: {target.format.value}')
  except pyvips.Error as e:
    raise ProcessError(f'Error encoding image: {e}') from e


class Transformer:

  def __init__(self, log: Logger):
    self.log = log

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({'message': message, **dict})

  def target_spec(self, meta: ImageMetadata, req: ImageRequest, watermark: bool) -> TargetSpec:
    size = resolve_target(meta.size, req)
    return TargetSpec(
        width=size.width,
        height=size.height,
        format=select_format(req.requested_format, meta.format),
        watermark=watermark)

  def transform(self, raw: bytes, req: ImageRequest) -> Rendition:
    start_ns = time.time_ns()

    image, meta = decode(raw)

    watermark = needs_watermark(req)
    if watermark:
      image, fmt = apply_watermark(image, meta.format)
      meta = dataclasses.replace(meta, format=fmt)

    target = self.target_spec(meta, req, watermark)
    body = encode(image, target)

    vips_us = (time.time_ns() - start_ns) // 1000
    self.log_debug(
        'transformed', {
            'source': f'{meta.width}x{meta.height}',
            'target': f'{target.width}x{target.height}',
            'format': target.format.value,
            'watermark': watermark,
            'img_size': len(body),
            'vips_us': vips_us,
        })

    return Rendition(
        body=body, content_type=target.format.content_type, target=target, vips_us=vips_us)
