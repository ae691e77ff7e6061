import dataclasses
import logging
import threading
import time
from http import HTTPStatus
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Callable, Optional

from croplambda.contenttype import content_type
from croplambda.pathcodec import SECONDARY_EXTENSION, PathCodec, TransformRequest
from croplambda.storage import SourceNotFound, Storage, StorageError
from croplambda.transcode import TranscodeConfig, TranscodeError, transcode
from croplambda.transform import EngineConfig, ImageTransform, TransformError
from croplambda.typing import CacheKey


class CropError(Exception):
  status: int = HTTPStatus.INTERNAL_SERVER_ERROR


class TokenMismatch(CropError):
  status = HTTPStatus.NOT_FOUND


class NotFound(CropError):
  status = HTTPStatus.NOT_FOUND


class QuotaExceeded(CropError):
  pass


class UpstreamFailure(CropError):
  pass


class TranscodeFailure(UpstreamFailure):
  pass


@dataclasses.dataclass(frozen=True)
class Redirect:
  url: str
  status: int = HTTPStatus.MOVED_PERMANENTLY


@dataclasses.dataclass(frozen=True)
class Stream:
  path: Path
  content_type: Optional[str]
  status: int = HTTPStatus.OK


Delivery = Redirect | Stream

Engine = Callable[[bytes, EngineConfig], ImageTransform]
Transcoder = Callable[[Path, Path, str, int, Path, int], None]


class CropHandler:
  """Serves a crop request, rendering and storing the crop on the first request for it.

  Concurrent misses for the same key both render; the store publishes each write atomically, so
  readers only ever see a complete crop.
  """

  def __init__(
      self,
      log: logging.Logger,
      codec: PathCodec,
      storage: Storage,
      transcoder: Optional[TranscodeConfig] = None,
      engine: Engine = ImageTransform,
      run_transcoder: Transcoder = transcode,
  ):
    self.log = log
    self.codec = codec
    self.storage = storage
    self.transcoder = transcoder
    self.engine = engine
    self.run_transcoder = run_transcoder
    self.local = threading.local()

  @property
  def log_context(self) -> dict[str, Any]:
    return getattr(self.local, 'log_context', {})

  def set_log_context(self, path: str, qstr: str) -> None:
    self.local.log_context = {'path': path, 'qstr': qstr}

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def handle(self, path: str, token: Optional[str]) -> Delivery:
    request_path = path
    secondary = False
    if path.endswith(SECONDARY_EXTENSION):
      request_path = path[:-len(SECONDARY_EXTENSION)]
      secondary = self.transcoder is not None

    # Paths that are not crops belong to the origin, signed or not.
    request = self.codec.parse(request_path)
    if request is None:
      raise NotFound(f'not a crop request: {path}')

    expected = self.codec.signing_token(path)
    if expected is not None and token != expected:
      raise TokenMismatch('token mismatch')

    key = request.key
    if self.crop_exists(key):
      self.log_debug('crop found', {'key': key})
    else:
      self.check_budget(request, key)
      self.render(request)

    if secondary:
      key = self.ensure_secondary(request)

    return self.deliver(key)

  def crop_exists(self, key: CacheKey) -> bool:
    try:
      return self.storage.crop_exists(key)
    except StorageError as e:
      raise UpstreamFailure(f'failed to look up crop: {e}') from e

  def check_budget(self, request: TransformRequest, key: CacheKey) -> None:
    try:
      too_many = self.storage.too_many_crops(request.source, key)
    except StorageError as e:
      raise UpstreamFailure(f'failed to count crops: {e}') from e

    if too_many:
      raise QuotaExceeded(f'too many crops: {request.source}')

  def render(self, request: TransformRequest) -> None:
    try:
      data = self.storage.read_src(request.source)
    except SourceNotFound as e:
      raise UpstreamFailure(f'source not found: {request.source}') from e
    except StorageError as e:
      raise UpstreamFailure(f'failed to read source: {e}') from e

    start_ns = time.time_ns()

    try:
      image = self.engine(data, self.codec.engine_config(request))
      crop = image.process(request.width, request.height, request.options).get()
    except TransformError as e:
      raise UpstreamFailure(f'failed to resize: {e}') from e

    vips_us = (time.time_ns() - start_ns) // 1000

    try:
      self.storage.write_crop(request.key, crop)
    except StorageError as e:
      raise UpstreamFailure(f'failed to write crop: {e}') from e

    self.log_debug('crop written', {
        'key': request.key,
        'img_size': len(crop),
        'vips_us': vips_us,
    })

  def ensure_secondary(self, request: TransformRequest) -> CacheKey:
    if self.transcoder is None:
      raise Exception('system error')

    primary = request.key
    key = CacheKey(f'{primary}{SECONDARY_EXTENSION}')
    if self.crop_exists(key):
      return key

    self.check_budget(request, key)

    workdir = self.storage.local_crops_dir_path()
    start_ns = time.time_ns()

    try:
      with self.storage.fetch_crop(primary) as src, NamedTemporaryFile(
          dir=workdir, prefix='.transcode-', suffix=SECONDARY_EXTENSION,
          delete_on_close=False) as out:
        out.close()
        self.run_transcoder(
            src,
            Path(out.name),
            self.transcoder.binary,
            self.transcoder.quality,
            workdir,
            self.transcoder.timeout,
        )
        data = Path(out.name).read_bytes()
      self.storage.write_crop(key, data)
    except (TranscodeError, StorageError, OSError) as e:
      raise TranscodeFailure(f'failed to transcode {primary}: {e}') from e

    self.log_debug('crop transcoded', {
        'key': key,
        'img_size': len(data),
        'transcode_us': (time.time_ns() - start_ns) // 1000,
    })

    return key

  def deliver(self, key: CacheKey) -> Delivery:
    if self.storage.crops_are_remote():
      return Redirect(self.codec.path_to_url(key))

    return Stream(self.storage.local_crops_dir_path() / key, content_type(key))
