import dataclasses
import re
from typing import Optional, Tuple

from imgproxy.locate.index import ImageRequest

int_re = re.compile(r'[+-]?[0-9]+')


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  def fill_degenerate(self, source: 'Size') -> 'Size':
    """Derives a zero axis from the other one with the source aspect ratio."""
    if self.width == 0 and 0 < self.height:
      return Size(scale_axis(self.height, source.width, source.height), self.height)
    if self.height == 0 and 0 < self.width:
      return Size(self.width, scale_axis(self.width, source.height, source.width))
    return self


def scale_axis(given: int, numerator: int, denominator: int) -> int:
  return max(1, (2 * given * numerator + denominator) // (2 * denominator))


def parse_positive(s: str) -> Optional[int]:
  if int_re.fullmatch(s) is None:
    return None

  v = int(s)
  if v <= 0:
    return None

  return v


def resolve(
    source_width: int,
    source_height: int,
    width_str: str,
    height_str: str,
) -> Tuple[int, int]:
  if width_str == '' and height_str == '':
    return (source_width, source_height)

  width = parse_positive(width_str)
  height = parse_positive(height_str)

  if height_str == '':
    if width is None:
      return (source_width, source_height)
    # Integer division first; the result is not always proportional.
    return (width, (width // source_width) * source_height)

  if width_str == '':
    if height is None:
      return (source_width, source_height)
    return ((height // source_height) * source_width, height)

  return (
      source_width if width is None else width,
      source_height if height is None else height,
  )


def resolve_target(source: Size, req: ImageRequest) -> Size:
  width, height = resolve(source.width, source.height, req.width, req.height)

  # Short-form parameters take precedence over the long form.
  if req.w != '' or req.h != '':
    width, height = resolve(source.width, source.height, req.w, req.h)

  return Size(width, height).fill_degenerate(source)
