import base64
import dataclasses
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from typing import Optional
from urllib import parse

import boto3
from mypy_boto3_s3.client import S3Client
from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from croplambda.handler import CropError, CropHandler, Delivery, NotFound, Redirect, Stream
from croplambda.jsonlog import init_logging
from croplambda.pathcodec import PathCodec
from croplambda.storage import S3Disk, Storage
from croplambda.transcode import TranscodeConfig
from croplambda.typing import HttpPath, OriginRequestEvent, Request, ResponseResult

LAMBDA_EXPIRATION_MARGIN = 60

DEFAULT_CROPS_DIR = '/tmp/crops'

logger = init_logging(__name__)


def get_header(req: Request, name: str) -> str:
  return req['origin']['s3']['customHeaders'][name][0]['value']


def get_header_or(req: Request, name: str, default: str = '') -> str:
  value = get_header(req, name) if name in req['origin']['s3']['customHeaders'] else ''
  return default if value == '' else value


def get_flag(req: Request, name: str) -> bool:
  return get_header_or(req, name, 'false').lower() == 'true'


def key_from_path(path: HttpPath) -> str:
  return parse.unquote(path[1:])


@dataclasses.dataclass(eq=True, frozen=True)
class XParams:
  region: str
  original_bucket: str
  crops_domain: str
  crops_key_prefix: str
  crops_dir: str
  basedir: str
  signing_key: str
  max_crops: int
  ignore_patterns: str
  jpeg_quality: int
  interlace: bool
  upscale: bool
  cwebp_path: str
  cwebp_quality: int
  perm_resp_max_age: int
  error_max_age: int
  expiration_margin: int


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  b64_body: Optional[str]
  cache_control: str
  content_type: Optional[str]
  location: Optional[str]


class CropServer:
  instances: dict[XParams, 'CropServer'] = {}

  def __init__(
      self,
      log: Logger,
      handler: CropHandler,
      perm_resp_max_age: int,
      error_max_age: int,
  ):
    self.log = log
    self.handler = handler
    self.perm_resp_max_age = perm_resp_max_age
    self.error_max_age = error_max_age
    self.cache_control_perm = f'public, max-age={self.perm_resp_max_age}'
    self.cache_control_error = f'public, max-age={self.error_max_age}'

  @classmethod
  def create(cls, log: Logger, params: XParams, s3: S3Client) -> 'CropServer':
    ignore_spec = (
        None if params.ignore_patterns == '' else PathSpec.from_lines(
            GitWildMatchPattern, params.ignore_patterns.split(',')))
    url_prefix = (
        '' if params.crops_domain == '' else
        f'https://{params.crops_domain}/{params.crops_key_prefix}')

    codec = PathCodec(
        basedir=params.basedir,
        signing_key=params.signing_key,
        url_prefix=url_prefix,
        ignore_spec=ignore_spec,
        jpeg_quality=params.jpeg_quality,
        interlace=params.interlace,
        upscale=params.upscale)

    crops_disk = (
        None if params.crops_domain == '' else S3Disk(
            s3=s3,
            bucket=params.crops_domain.split('.', 1)[0],
            key_prefix=params.crops_key_prefix,
            expiration_margin=params.expiration_margin))

    storage = Storage(
        codec=codec,
        src_disk=S3Disk(s3=s3, bucket=params.original_bucket),
        local_crops_dir=Path(params.crops_dir),
        crops_disk=crops_disk,
        max_crops=params.max_crops)

    transcoder = (
        None if params.cwebp_path == '' else TranscodeConfig(
            binary=params.cwebp_path, quality=params.cwebp_quality))

    return cls(
        log=log,
        handler=CropHandler(log, codec, storage, transcoder),
        perm_resp_max_age=params.perm_resp_max_age,
        error_max_age=params.error_max_age)

  @classmethod
  def from_lambda(cls, log: Logger, req: Request) -> Optional['CropServer']:
    try:
      server_key = XParams(
          region=get_header(req, 'x-env-region'),
          original_bucket=req['origin']['s3']['domainName'].split('.', 1)[0],
          crops_domain=get_header_or(req, 'x-env-crops-domain'),
          crops_key_prefix=get_header_or(req, 'x-env-crops-key-prefix'),
          crops_dir=get_header_or(req, 'x-env-crops-dir', DEFAULT_CROPS_DIR),
          basedir=get_header_or(req, 'x-env-basedir'),
          signing_key=get_header_or(req, 'x-env-signing-key'),
          max_crops=int(get_header_or(req, 'x-env-max-crops', '0')),
          ignore_patterns=get_header_or(req, 'x-env-ignore-patterns'),
          jpeg_quality=int(get_header_or(req, 'x-env-jpeg-quality', '90')),
          interlace=get_flag(req, 'x-env-interlace'),
          upscale=get_flag(req, 'x-env-upscale'),
          cwebp_path=get_header_or(req, 'x-env-cwebp-path'),
          cwebp_quality=int(get_header_or(req, 'x-env-cwebp-quality', '80')),
          perm_resp_max_age=int(get_header(req, 'x-env-perm-resp-max-age')),
          error_max_age=int(get_header_or(req, 'x-env-error-max-age', '0')),
          expiration_margin=LAMBDA_EXPIRATION_MARGIN)
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None
    except ValueError as e:
      log.warning({
          'message': 'invalid environment variable',
          'reason': str(e),
      })
      return None

    if server_key not in cls.instances:
      s3 = boto3.client('s3', region_name=server_key.region)
      cls.instances[server_key] = cls.create(log, server_key, s3)

    return cls.instances[server_key]

  def error_response(self, status: int) -> InstantResponse:
    return InstantResponse(
        status=status,
        b64_body=None,
        cache_control=self.cache_control_error,
        content_type=None,
        location=None)

  def respond(self, delivery: Delivery) -> InstantResponse:
    match delivery:
      case Redirect(url=url, status=status):
        return InstantResponse(
            status=status,
            b64_body=None,
            cache_control=self.cache_control_perm,
            content_type=None,
            location=url)
      case Stream(path=path, content_type=content_type, status=status):
        try:
          body = path.read_bytes()
        except OSError as e:
          self.handler.log_error('failed to read crop', {'reason': str(e), 'file': str(path)})
          return self.error_response(HTTPStatus.INTERNAL_SERVER_ERROR)
        return InstantResponse(
            status=status,
            b64_body=base64.b64encode(body).decode(),
            cache_control=self.cache_control_perm,
            content_type=content_type,
            location=None)
      case _:
        raise Exception('system error')

  def process(self, path: HttpPath, qs: dict[str, list[str]]) -> Optional[InstantResponse]:
    token = qs['token'][0] if 'token' in qs else None

    try:
      delivery = self.handler.handle(key_from_path(path), token)
    except NotFound:
      return None
    except CropError as e:
      fields = {'reason': str(e), 'error': type(e).__name__}
      if e.status == HTTPStatus.NOT_FOUND:
        self.handler.log_warning('crop rejected', fields)
      else:
        self.handler.log_error('crop failed', fields)
      return self.error_response(e.status)

    return self.respond(delivery)


def lambda_main(event: OriginRequestEvent) -> Request | ResponseResult:
  req = event['Records'][0]['cf']['request']

  server = CropServer.from_lambda(logger, req)
  if server is None:
    return req

  path = req['uri']
  qstr = req['querystring']

  server.handler.set_log_context(path, qstr)
  result = server.process(path, parse.parse_qs(qstr))

  if result is None:
    server.handler.log_debug('not a crop', {'uri': path})
    return req

  response_result: ResponseResult = {
      'status': str(result.status),
      'headers': {
          'cache-control': [{
              'value': result.cache_control,
          }],
      },
  }

  if result.content_type is not None:
    response_result['headers']['content-type'] = [{'value': result.content_type}]

  if result.location is not None:
    response_result['headers']['location'] = [{'value': result.location}]

  if result.b64_body is not None:
    response_result['body'] = result.b64_body
    response_result['bodyEncoding'] = 'base64'

  server.handler.log_debug(
      'responded', {
          'uri': path,
          'status': result.status,
          'cache_control': result.cache_control,
          'content_type': result.content_type,
          'location': result.location,
      })

  return response_result
