import datetime
import os
import re
import uuid
from contextlib import contextmanager
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Generator, Optional

from botocore.exceptions import ClientError
from dateutil import parser, tz
from mypy_boto3_s3.client import S3Client

from croplambda.contenttype import content_type
from croplambda.pathcodec import PathCodec
from croplambda.typing import CacheKey, SourcePath

expiration_re = re.compile(r'\s*([\w-]+)="([^"]*)"(:?,|$)')


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


def parse_expiration(s: str) -> dict[str, str]:
  return {m.group(1): m.group(2) for m in expiration_re.finditer(s)}


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


class StorageError(Exception):
  pass


class SourceNotFound(StorageError):
  pass


class Disk:
  remote = False

  def read(self, key: str) -> bytes:
    raise NotImplementedError

  def exists(self, key: str) -> bool:
    raise NotImplementedError

  def write(self, key: str, data: bytes, mime: Optional[str]) -> None:
    raise NotImplementedError

  def list(self, prefix: str) -> list[str]:
    raise NotImplementedError


class LocalDisk(Disk):

  def __init__(self, root: Path):
    self.root = Path(root).resolve()

  def path(self, key: str) -> Path:
    p = (self.root / key).resolve()
    if p == self.root or not p.is_relative_to(self.root):
      raise StorageError(f'key escapes disk root: {key}')
    return p

  def read(self, key: str) -> bytes:
    try:
      return self.path(key).read_bytes()
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
      raise SourceNotFound(f'not found: {key}') from e
    except OSError as e:
      raise StorageError(f'failed to read {key}: {e}') from e

  def exists(self, key: str) -> bool:
    return self.path(key).is_file()

  def write(self, key: str, data: bytes, mime: Optional[str] = None) -> None:
    path = self.path(key)
    # Readers never see a partial file: write aside, then rename into place.
    tmp = path.with_name(f'.{path.name}.tmp-{uuid.uuid4().hex}')
    try:
      path.parent.mkdir(parents=True, exist_ok=True)
      tmp.write_bytes(data)
      os.replace(tmp, path)
    except OSError as e:
      tmp.unlink(missing_ok=True)
      raise StorageError(f'failed to write {key}: {e}') from e

  def list(self, prefix: str) -> list[str]:
    dirname, basename = os.path.split(prefix)
    directory = self.root / dirname
    if dirname != '':
      directory = self.path(dirname)
    if not directory.is_dir():
      return []

    return [
        f'{dirname}/{p.name}' if dirname != '' else p.name
        for p in sorted(directory.iterdir())
        if p.name.startswith(basename) and not p.name.startswith('.') and p.is_file()
    ]


class S3Disk(Disk):
  remote = True

  def __init__(
      self,
      s3: S3Client,
      bucket: str,
      key_prefix: str = '',
      expiration_margin: int = 0,
  ):
    self.s3 = s3
    self.bucket = bucket
    self.key_prefix = key_prefix
    self.expiration_margin = datetime.timedelta(seconds=expiration_margin)

  def s3_key(self, key: str) -> str:
    return f'{self.key_prefix}{key}'

  def object_expired(self, now: datetime.datetime, expiration: str) -> bool:
    d = parse_expiration(expiration)
    exp_str = d.get('expiry-date', None)
    if exp_str is None:
      return False

    exp = parser.parse(exp_str)
    return exp < now + self.expiration_margin

  def read(self, key: str) -> bytes:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=self.s3_key(key))
      return res['Body'].read()
    except ClientError as e:
      if is_not_found_client_error(e):
        raise SourceNotFound(f'not found: {key}') from e
      raise StorageError(f'failed to read {key}: {e}') from e

  def exists(self, key: str) -> bool:
    try:
      res = self.s3.head_object(Bucket=self.bucket, Key=self.s3_key(key))
    except ClientError as e:
      if is_not_found_client_error(e):
        return False
      raise StorageError(f'failed to check {key}: {e}') from e

    # An object about to be removed by a lifecycle rule is regenerated instead.
    if 'Expiration' in res and self.object_expired(get_now(), res['Expiration']):
      return False

    return True

  def write(self, key: str, data: bytes, mime: Optional[str] = None) -> None:
    kwargs: dict[str, Any] = {}
    if mime is not None:
      kwargs['ContentType'] = mime

    try:
      self.s3.put_object(Bucket=self.bucket, Key=self.s3_key(key), Body=data, **kwargs)
    except ClientError as e:
      raise StorageError(f'failed to write {key}: {e}') from e

  def list(self, prefix: str) -> list[str]:
    keys = []
    try:
      paginator = self.s3.get_paginator('list_objects_v2')
      for page in paginator.paginate(Bucket=self.bucket, Prefix=self.s3_key(prefix)):
        for obj in page.get('Contents', []):
          keys.append(obj['Key'][len(self.key_prefix):])
    except ClientError as e:
      raise StorageError(f'failed to list {prefix}: {e}') from e

    return keys


class Storage:
  """Source images on one disk, crops on another.

  Crops are served from the local crops directory unless the crops disk is remote, in which case
  the local directory is only used as scratch space for transcoding.
  """

  def __init__(
      self,
      codec: PathCodec,
      src_disk: Disk,
      local_crops_dir: Path,
      crops_disk: Optional[Disk] = None,
      max_crops: int = 0,
  ):
    self.codec = codec
    self.src_disk = src_disk
    self.local = LocalDisk(local_crops_dir)
    self.crops_disk = self.local if crops_disk is None else crops_disk
    self.max_crops = max_crops

  def crops_are_remote(self) -> bool:
    return self.crops_disk.remote

  def local_crops_dir_path(self) -> Path:
    return self.local.root

  def list_crops(self, source: SourcePath) -> list[str]:
    return [k for k in self.crops_disk.list(f'{source}-') if self.codec.is_crop_of(k, source)]

  def too_many_crops(self, source: SourcePath, key: Optional[CacheKey] = None) -> bool:
    """Whether producing `key` would exceed the budget of `source`.

    A listed `key` is being regenerated (e.g. it is about to expire), so it does not count.
    """
    if self.max_crops <= 0:
      return False
    crops = [k for k in self.list_crops(source) if k != key]
    return self.max_crops <= len(crops)

  def crop_exists(self, key: CacheKey) -> bool:
    return self.crops_disk.exists(key)

  def read_src(self, source: SourcePath) -> bytes:
    return self.src_disk.read(source)

  def write_crop(self, key: CacheKey, data: bytes) -> None:
    self.crops_disk.write(key, data, content_type(key))

  @contextmanager
  def fetch_crop(self, key: CacheKey) -> Generator[Path, None, None]:
    """Yields a local file holding the crop.

    Remote crops are downloaded into a scratch file in the local crops dir, removed on exit.
    """
    self.local.root.mkdir(parents=True, exist_ok=True)
    if self.crops_disk is self.local:
      yield self.local.path(key)
      return

    with NamedTemporaryFile(
        dir=self.local.root, prefix='.fetch-', suffix=Path(key).suffix,
        delete_on_close=False) as f:
      f.write(self.crops_disk.read(key))
      f.close()
      yield Path(f.name)
