import dataclasses
from typing import Any, Optional, Self, Sequence

import pyvips  # type: ignore
from pyvips import Extend, Image, Interesting  # type: ignore

PADDING_COLOR = (230, 230, 230)

# Upper bound libvips accepts for a single dimension.
VIPS_MAX_COORD = 10000000

QUADRANTS = {
    'T': Interesting.LOW,
    'L': Interesting.LOW,
    'C': Interesting.CENTRE,
    'B': Interesting.HIGH,
    'R': Interesting.HIGH,
}

OPTION_ORDER = ('trim', 'trim_perc', 'resize', 'pad', 'quadrant', 'quality')


class TransformError(Exception):
  pass


def parse_ints(values: list[str], count: int, lower: int, upper: int) -> Optional[list[int]]:
  if len(values) != count:
    return None
  try:
    ints = [int(v) for v in values]
  except ValueError:
    return None
  if any(i < lower or upper < i for i in ints):
    return None
  return ints


def parse_fractions(values: list[str]) -> Optional[list[float]]:
  if len(values) != 4:
    return None
  try:
    fs = [float(v) for v in values]
  except ValueError:
    return None
  if any(not 0.0 <= f <= 1.0 for f in fs):
    return None
  return fs


@dataclasses.dataclass(eq=True, frozen=True)
class Option:
  name: str
  args: tuple[str, ...] = ()

  def __str__(self) -> str:
    if len(self.args) == 0:
      return f'-{self.name}'
    return f'-{self.name}({",".join(self.args)})'

  @classmethod
  def create(cls, name: str, args: Optional[str]) -> Optional['Option']:
    """Validates an option and normalizes its arguments.

    Returns None for unknown names and malformed arguments, so that a path carrying them never
    decodes as a crop request.
    """
    values = [] if args is None else args.split(',')

    match name:
      case 'resize':
        if args is not None:
          return None
        return cls(name)
      case 'pad':
        if args is None:
          return cls(name)
        color = parse_ints(values, 3, 0, 255)
        if color is None:
          return None
        return cls(name, tuple(str(c) for c in color))
      case 'quadrant':
        if len(values) != 1 or values[0] not in QUADRANTS:
          return None
        return cls(name, (values[0],))
      case 'trim':
        coords = parse_ints(values, 4, 0, VIPS_MAX_COORD)
        if coords is None or coords[2] <= coords[0] or coords[3] <= coords[1]:
          return None
        return cls(name, tuple(str(c) for c in coords))
      case 'trim_perc':
        fractions = parse_fractions(values)
        if fractions is None or fractions[2] <= fractions[0] or fractions[3] <= fractions[1]:
          return None
        return cls(name, tuple(repr(f) for f in fractions))
      case 'quality':
        quality = parse_ints(values, 1, 1, 100)
        if quality is None:
          return None
        return cls(name, (str(quality[0]),))
      case _:
        return None


@dataclasses.dataclass(eq=True, frozen=True)
class EngineConfig:
  extension: str
  quality: int = 90
  interlace: bool = False
  upscale: bool = False


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


@dataclasses.dataclass(frozen=True)
class Area:
  x: int
  y: int
  width: int
  height: int

  @classmethod
  def from_corners(cls, x1: int, y1: int, x2: int, y2: int) -> 'Area':
    if x1 < 0 or y1 < 0 or x2 <= x1 or y2 <= y1:
      raise ValueError(f'Invalid argument: x1: {x1}, y1: {y1}, x2: {x2}, y2: {y2}')

    return cls(x1, y1, x2 - x1, y2 - y1)

  @property
  def right(self) -> int:
    return self.x + self.width

  @property
  def bottom(self) -> int:
    return self.y + self.height

  def is_in(self, frame: Size) -> bool:
    return self.right <= frame.width and self.bottom <= frame.height


@dataclasses.dataclass(eq=True, frozen=True)
class FourSides:
  left: int
  right: int
  top: int
  bottom: int


def calc_padding(resized: Size, target: Size) -> FourSides:
  # Blank areas are distributed equally.
  horizontal, h_mod = divmod(max(0, target.width - resized.width), 2)
  vertical, v_mod = divmod(max(0, target.height - resized.height), 2)

  return FourSides(
      left=horizontal, right=horizontal + h_mod, top=vertical, bottom=vertical + v_mod)


def background_for(image: Image, color: Sequence[int]) -> list[float]:
  alpha = image.hasalpha()
  color_bands = image.bands - 1 if alpha else image.bands

  if color_bands < 3:
    background = [float(sum(color)) / len(color)] * color_bands
  else:
    background = [float(c) for c in color] + [0.0] * (color_bands - 3)

  if alpha:
    background.append(255.0)

  return background


class ImageTransform:
  """Resizes and crops a single image with libvips.

  Mirrors the interface the request handler relies on: construct from the source bytes, call
  `process` once, and encode the result with `get`.
  """

  def __init__(self, data: bytes, config: EngineConfig):
    self.config = config
    try:
      self.image: Image = Image.new_from_buffer(data, '')
    except pyvips.Error as e:
      raise TransformError(f'failed to load image: {e}') from e

  def process(
      self,
      width: Optional[int],
      height: Optional[int],
      options: Sequence[Option],
  ) -> Self:
    opts = {o.name: o for o in options}

    try:
      image = self.image

      if 'trim' in opts:
        x1, y1, x2, y2 = [int(a) for a in opts['trim'].args]
        image = self.trim(image, Area.from_corners(x1, y1, x2, y2))
      elif 'trim_perc' in opts:
        original = Size.from_image(image)
        fx1, fy1, fx2, fy2 = [float(a) for a in opts['trim_perc'].args]
        image = self.trim(
            image,
            Area.from_corners(
                round(fx1 * original.width),
                round(fy1 * original.height),
                round(fx2 * original.width),
                round(fy2 * original.height)))

      if width is not None or height is not None:
        image = self.resize(image, width, height, opts)

      self.image = image
    except (pyvips.Error, ValueError) as e:
      raise TransformError(f'failed to process image: {e}') from e

    return self

  def trim(self, image: Image, area: Area) -> Image:
    if not area.is_in(Size.from_image(image)):
      raise TransformError(f'trim area out of image: {area}')
    return image.extract_area(area.x, area.y, area.width, area.height)

  def resize(
      self,
      image: Image,
      width: Optional[int],
      height: Optional[int],
      opts: dict[str, Option],
  ) -> Image:
    size = 'both' if self.config.upscale else 'down'

    if width is None or height is None or 'resize' in opts or 'pad' in opts:
      image = image.thumbnail_image(
          VIPS_MAX_COORD if width is None else width,
          height=VIPS_MAX_COORD if height is None else height,
          size=size)
    else:
      quadrant = opts['quadrant'].args[0] if 'quadrant' in opts else 'C'
      image = image.thumbnail_image(width, height=height, crop=QUADRANTS[quadrant], size=size)

    if 'pad' in opts and width is not None and height is not None:
      color = tuple(int(a) for a in opts['pad'].args) or PADDING_COLOR
      target = Size(width, height)
      padding = calc_padding(Size.from_image(image), target)
      image = image.embed(
          padding.left,
          padding.top,
          target.width,
          target.height,
          extend=Extend.BACKGROUND,
          background=background_for(image, color))

    return image

  def get(self) -> bytes:
    extension = self.config.extension
    kwargs: dict[str, Any] = {}
    if extension == 'jpg':
      kwargs = {'Q': self.config.quality, 'interlace': self.config.interlace}
    elif extension == 'png':
      kwargs = {'interlace': self.config.interlace}

    try:
      return self.image.write_to_buffer(f'.{extension}', **kwargs)
    except pyvips.Error as e:
      raise TransformError(f'failed to encode image: {e}') from e
