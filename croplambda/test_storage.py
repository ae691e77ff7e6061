import io
import threading
from pathlib import Path
from typing import Generator

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber
from mypy_boto3_s3.client import S3Client

from croplambda.pathcodec import PathCodec

from .storage import (
    LocalDisk,
    S3Disk,
    SourceNotFound,
    Storage,
    StorageError,
    parse_expiration
)

REGION = 'us-east-1'
BUCKET = 'crops'
KEY_PREFIX = 'prefix/'


@pytest.fixture
def s3() -> S3Client:
  return boto3.client(
      's3', region_name=REGION, aws_access_key_id='test', aws_secret_access_key='test')


@pytest.fixture
def stubber(s3: S3Client) -> Generator[Stubber, None, None]:
  with Stubber(s3) as stubber:
    yield stubber
    stubber.assert_no_pending_responses()


@pytest.fixture
def s3_disk(s3: S3Client) -> S3Disk:
  return S3Disk(s3, BUCKET, KEY_PREFIX, expiration_margin=60)


def body(data: bytes) -> StreamingBody:
  return StreamingBody(io.BytesIO(data), len(data))


def test_local_write_read(tmp_path: Path) -> None:
  disk = LocalDisk(tmp_path)
  disk.write('photos/cat.jpg-1x1.jpg', b'crop')

  assert disk.exists('photos/cat.jpg-1x1.jpg')
  assert disk.read('photos/cat.jpg-1x1.jpg') == b'crop'
  assert [p.name for p in (tmp_path / 'photos').iterdir()] == ['cat.jpg-1x1.jpg']


def test_local_write_replaces(tmp_path: Path) -> None:
  disk = LocalDisk(tmp_path)
  disk.write('a.jpg', b'first')
  disk.write('a.jpg', b'second')
  assert disk.read('a.jpg') == b'second'


def test_local_concurrent_writes_are_complete(tmp_path: Path) -> None:
  disk = LocalDisk(tmp_path)
  payloads = [bytes([i]) * 100000 for i in range(8)]
  barrier = threading.Barrier(len(payloads))
  seen: list[bytes] = []

  def write(data: bytes) -> None:
    barrier.wait()
    disk.write('race.jpg', data)
    seen.append(disk.read('race.jpg'))

  threads = [threading.Thread(target=write, args=(p,)) for p in payloads]
  for t in threads:
    t.start()
  for t in threads:
    t.join()

  assert disk.read('race.jpg') in payloads
  assert all(s in payloads for s in seen)
  assert [p.name for p in tmp_path.iterdir()] == ['race.jpg']


def test_local_read_missing(tmp_path: Path) -> None:
  with pytest.raises(SourceNotFound):
    LocalDisk(tmp_path).read('missing.jpg')


@pytest.mark.parametrize('key', ['../escape.jpg', 'a/../../escape.jpg', ''])
def test_local_rejects_escaping_keys(tmp_path: Path, key: str) -> None:
  disk = LocalDisk(tmp_path / 'root')
  with pytest.raises(StorageError):
    disk.write(key, b'x')


def test_local_list(tmp_path: Path) -> None:
  disk = LocalDisk(tmp_path)
  for key in ['photos/cat.jpg-1x1.jpg', 'photos/cat.jpg-2x2.jpg', 'photos/dog.jpg-1x1.jpg']:
    disk.write(key, b'x')
  (tmp_path / 'photos' / '.cat.jpg-3x3.jpg.tmp-abc').write_bytes(b'partial')

  assert disk.list('photos/cat.jpg-') == ['photos/cat.jpg-1x1.jpg', 'photos/cat.jpg-2x2.jpg']
  assert disk.list('other/cat.jpg-') == []


def test_s3_read(s3_disk: S3Disk, stubber: Stubber) -> None:
  stubber.add_response(
      'get_object', {'Body': body(b'image')}, {
          'Bucket': BUCKET,
          'Key': f'{KEY_PREFIX}photos/cat.jpg'
      })
  assert s3_disk.read('photos/cat.jpg') == b'image'


def test_s3_read_missing(s3_disk: S3Disk, stubber: Stubber) -> None:
  stubber.add_client_error('get_object', service_error_code='NoSuchKey', http_status_code=404)
  with pytest.raises(SourceNotFound):
    s3_disk.read('photos/cat.jpg')


def test_s3_read_denied(s3_disk: S3Disk, stubber: Stubber) -> None:
  stubber.add_client_error('get_object', service_error_code='AccessDenied', http_status_code=403)
  with pytest.raises(StorageError) as e:
    s3_disk.read('photos/cat.jpg')
  assert not isinstance(e.value, SourceNotFound)


@pytest.mark.parametrize(
    'response,expected', [
        pytest.param({}, True, id='plain'),
        pytest.param(
            {'Expiration': 'expiry-date="Fri, 23 Dec 2112 00:00:00 GMT", rule-id="crops"'},
            True,
            id='expires-later'),
        pytest.param(
            {'Expiration': 'expiry-date="Fri, 23 Dec 2012 00:00:00 GMT", rule-id="crops"'},
            False,
            id='expiring'),
    ])
def test_s3_exists(s3_disk: S3Disk, stubber: Stubber, response: dict, expected: bool) -> None:
  stubber.add_response('head_object', response, {'Bucket': BUCKET, 'Key': f'{KEY_PREFIX}a.jpg'})
  assert s3_disk.exists('a.jpg') == expected


def test_s3_exists_missing(s3_disk: S3Disk, stubber: Stubber) -> None:
  stubber.add_client_error('head_object', service_error_code='404', http_status_code=404)
  assert not s3_disk.exists('a.jpg')


def test_s3_write(s3_disk: S3Disk, stubber: Stubber) -> None:
  stubber.add_response(
      'put_object', {}, {
          'Bucket': BUCKET,
          'Key': f'{KEY_PREFIX}a.jpg-1x1.jpg',
          'Body': b'crop',
          'ContentType': 'image/jpeg',
      })
  s3_disk.write('a.jpg-1x1.jpg', b'crop', 'image/jpeg')


def test_s3_write_failure(s3_disk: S3Disk, stubber: Stubber) -> None:
  stubber.add_client_error('put_object', service_error_code='InternalError', http_status_code=500)
  with pytest.raises(StorageError):
    s3_disk.write('a.jpg-1x1.jpg', b'crop', 'image/jpeg')


def test_s3_list(s3_disk: S3Disk, stubber: Stubber) -> None:
  stubber.add_response(
      'list_objects_v2', {
          'IsTruncated': False,
          'Contents': [
              {
                  'Key': f'{KEY_PREFIX}photos/cat.jpg-1x1.jpg'
              },
              {
                  'Key': f'{KEY_PREFIX}photos/cat.jpg-2x2.jpg.webp'
              },
          ],
      }, {
          'Bucket': BUCKET,
          'Prefix': f'{KEY_PREFIX}photos/cat.jpg-'
      })
  assert s3_disk.list('photos/cat.jpg-') == [
      'photos/cat.jpg-1x1.jpg',
      'photos/cat.jpg-2x2.jpg.webp',
  ]


def test_parse_expiration() -> None:
  assert parse_expiration('expiry-date="Fri, 23 Dec 2012 00:00:00 GMT", rule-id="picture"') == {
      'expiry-date': 'Fri, 23 Dec 2012 00:00:00 GMT',
      'rule-id': 'picture',
  }


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
  return Storage(
      codec=PathCodec(),
      src_disk=LocalDisk(tmp_path / 'src'),
      local_crops_dir=tmp_path / 'crops',
      max_crops=2)


def test_too_many_crops(storage: Storage) -> None:
  assert not storage.too_many_crops('photos/cat.jpg')

  storage.write_crop('photos/cat.jpg-1x1.jpg', b'x')
  storage.crops_disk.write('photos/cat.jpg-notes.txt', b'x')
  storage.write_crop('photos/cat.jpg.bak-1x1.jpg', b'x')
  assert not storage.too_many_crops('photos/cat.jpg')

  storage.write_crop('photos/cat.jpg-1x1.jpg.webp', b'x')
  assert storage.list_crops('photos/cat.jpg') == [
      'photos/cat.jpg-1x1.jpg',
      'photos/cat.jpg-1x1.jpg.webp',
  ]
  assert storage.too_many_crops('photos/cat.jpg')
  assert not storage.too_many_crops('photos/dog.jpg')


def test_unlimited_crops(tmp_path: Path) -> None:
  storage = Storage(PathCodec(), LocalDisk(tmp_path / 'src'), tmp_path / 'crops')
  for i in range(1, 5):
    storage.write_crop(f'photos/cat.jpg-{i}x{i}.jpg', b'x')
  assert not storage.too_many_crops('photos/cat.jpg')


def test_local_crops(storage: Storage, tmp_path: Path) -> None:
  assert not storage.crops_are_remote()
  assert storage.local_crops_dir_path() == (tmp_path / 'crops').resolve()

  storage.write_crop('photos/cat.jpg-1x1.jpg', b'crop')
  assert storage.crop_exists('photos/cat.jpg-1x1.jpg')
  path = (tmp_path / 'crops' / 'photos' / 'cat.jpg-1x1.jpg').resolve()
  with storage.fetch_crop('photos/cat.jpg-1x1.jpg') as fetched:
    assert fetched == path
  assert path.read_bytes() == b'crop'


def test_read_src(storage: Storage, tmp_path: Path) -> None:
  (tmp_path / 'src' / 'photos').mkdir(parents=True)
  (tmp_path / 'src' / 'photos' / 'cat.jpg').write_bytes(b'original')
  assert storage.read_src('photos/cat.jpg') == b'original'
  with pytest.raises(SourceNotFound):
    storage.read_src('photos/dog.jpg')


def test_remote_fetch_crop(
    s3_disk: S3Disk,
    stubber: Stubber,
    tmp_path: Path,
) -> None:
  storage = Storage(PathCodec(), LocalDisk(tmp_path / 'src'), tmp_path / 'work', s3_disk)
  assert storage.crops_are_remote()

  stubber.add_response(
      'get_object', {'Body': body(b'crop')}, {
          'Bucket': BUCKET,
          'Key': f'{KEY_PREFIX}photos/cat.jpg-1x1.jpg'
      })

  work = (tmp_path / 'work').resolve()
  with storage.fetch_crop('photos/cat.jpg-1x1.jpg') as path:
    assert path.read_bytes() == b'crop'
    assert path.parent == work
    assert path.suffix == '.jpg'

  # The scratch copy does not outlive the block.
  assert not path.exists()
  assert list(work.iterdir()) == []


def test_too_many_crops_ignores_regenerated_key(storage: Storage) -> None:
  storage.write_crop('photos/cat.jpg-1x1.jpg', b'x')
  storage.write_crop('photos/cat.jpg-2x2.jpg', b'x')

  assert storage.too_many_crops('photos/cat.jpg', 'photos/cat.jpg-3x3.jpg')
  assert not storage.too_many_crops('photos/cat.jpg', 'photos/cat.jpg-2x2.jpg')
