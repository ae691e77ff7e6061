import dataclasses
import hashlib
import hmac
import re
from typing import Optional, Sequence
from urllib import parse

from pathspec import PathSpec

from croplambda.transform import OPTION_ORDER, EngineConfig, Option
from croplambda.typing import CacheKey, SourcePath

SECONDARY_EXTENSION = '.webp'

# Largest width or height a crop may ask for.
MAX_DIMENSION = 10000

OUTPUT_EXTENSIONS = {
    'jpg': 'jpg',
    'jpeg': 'jpg',
    'png': 'png',
    'gif': 'gif',
}

crop_path_re = re.compile(
    r'^(?P<source>.+\.(?P<source_ext>(?i:jpe?g|png|gif|webp)))'
    r'-(?P<width>[0-9]+|_)x(?P<height>[0-9]+|_)'
    r'(?P<options>(?:-[a-z_]+(?:\([^()/]*\))?)*)'
    r'(?:\.(?P<ext>jpe?g|png|gif))?$')
option_re = re.compile(r'-([a-z_]+)(?:\(([^()/]*)\))?')


def parse_dimension(s: str) -> tuple[bool, Optional[int]]:
  if s == '_':
    return True, None
  value = int(s)
  if value <= 0 or MAX_DIMENSION < value:
    return False, None
  return True, value


def format_dimension(d: Optional[int]) -> str:
  return '_' if d is None else str(d)


@dataclasses.dataclass(eq=True, frozen=True)
class TransformRequest:
  source: SourcePath
  width: Optional[int]
  height: Optional[int]
  options: tuple[Option, ...]
  extension: str

  @property
  def key(self) -> CacheKey:
    opts = ''.join(str(o) for o in self.options)
    return CacheKey(
        f'{self.source}-{format_dimension(self.width)}x{format_dimension(self.height)}'
        f'{opts}.{self.extension}')

  def option(self, name: str) -> Optional[Option]:
    for o in self.options:
      if o.name == name:
        return o
    return None


def parse_options(s: str) -> Optional[tuple[Option, ...]]:
  found: dict[str, Option] = {}
  for m in option_re.finditer(s):
    name = m[1]
    if name in found:
      return None
    option = Option.create(name, m[2])
    if option is None:
      return None
    found[name] = option

  if 'trim' in found and 'trim_perc' in found:
    return None

  return tuple(found[name] for name in OPTION_ORDER if name in found)


class PathCodec:
  """Translates request paths into transform requests and back.

  A crop path is the source path followed by `-{width}x{height}`, any number of `-option` or
  `-option(arg,...)` segments and the output extension, e.g.
  `photos/cat.jpg-200x_-quadrant(T).jpg`. `_` leaves a dimension to the aspect ratio.
  """

  def __init__(
      self,
      basedir: str = '',
      signing_key: str = '',
      url_prefix: str = '',
      ignore_spec: Optional[PathSpec] = None,
      jpeg_quality: int = 90,
      interlace: bool = False,
      upscale: bool = False,
  ):
    self.basedir = basedir.strip('/')
    self.signing_key = signing_key
    self.url_prefix = url_prefix
    self.ignore_spec = ignore_spec
    self.jpeg_quality = jpeg_quality
    self.interlace = interlace
    self.upscale = upscale

  def relative_path(self, path: str) -> str:
    path = path.lstrip('/')
    if self.basedir != '' and path.startswith(f'{self.basedir}/'):
      return path[len(self.basedir) + 1:]
    return path

  def decode(self, relative: str) -> Optional[TransformRequest]:
    m = crop_path_re.match(relative)
    if m is None:
      return None

    ok_w, width = parse_dimension(m['width'])
    ok_h, height = parse_dimension(m['height'])
    if not ok_w or not ok_h:
      return None

    options = parse_options(m['options'])
    if options is None:
      return None

    ext = m['ext'] if m['ext'] is not None else m['source_ext'].lower()
    extension = OUTPUT_EXTENSIONS.get(ext)
    if extension is None:
      return None

    source = SourcePath(m['source'])
    if self.ignore_spec is not None and self.ignore_spec.match_file(source):
      return None

    return TransformRequest(source, width, height, options, extension)

  def parse(self, path: str) -> Optional[TransformRequest]:
    return self.decode(self.relative_path(path))

  def signing_token(self, path: str) -> Optional[str]:
    if self.signing_key == '':
      return None
    return hmac.new(
        self.signing_key.encode(),
        self.relative_path(path).encode(),
        hashlib.sha256,
    ).hexdigest()

  def path_to_url(self, key: CacheKey) -> str:
    return f'{self.url_prefix}{parse.quote(key)}'

  def is_crop_of(self, key: str, source: SourcePath) -> bool:
    if key.endswith(SECONDARY_EXTENSION):
      key = key[:-len(SECONDARY_EXTENSION)]
    request = self.decode(key)
    return request is not None and request.source == source

  def url(
      self,
      source: str,
      width: Optional[int],
      height: Optional[int],
      options: Sequence[Option] = (),
      extension: Optional[str] = None,
      secondary: bool = False,
  ) -> str:
    """Builds the request URI of a crop, signed when a signing key is configured."""
    if extension is None:
      extension = source.rsplit('.', 1)[-1].lower()
    extension = OUTPUT_EXTENSIONS[extension]
    ordered = sorted(options, key=lambda o: OPTION_ORDER.index(o.name))
    request = TransformRequest(SourcePath(source), width, height, tuple(ordered), extension)

    path = str(request.key)
    if secondary:
      path += SECONDARY_EXTENSION
    if self.basedir != '':
      path = f'{self.basedir}/{path}'

    uri = '/' + parse.quote(path)
    token = self.signing_token(path)
    if token is None:
      return uri
    return f'{uri}?{parse.urlencode({"token": token})}'

  def engine_config(self, request: TransformRequest) -> EngineConfig:
    quality = request.option('quality')
    return EngineConfig(
        extension=request.extension,
        quality=self.jpeg_quality if quality is None else int(quality.args[0]),
        interlace=self.interlace,
        upscale=self.upscale)
