import dataclasses
import subprocess
from pathlib import Path


class TranscodeError(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class TranscodeConfig:
  binary: str
  quality: int = 80
  timeout: int = 30


def transcode(
    src: Path,
    dest: Path,
    binary: str,
    quality: int,
    cwd: Path,
    timeout: int = 30,
) -> None:
  """Runs `cwebp`-compatible `binary` to encode `src` into `dest`.

  Blocks until the encoder exits. Raises TranscodeError unless it exits with 0 and leaves a
  non-empty `dest` behind.
  """
  args = [binary, '-q', str(quality), str(src), '-o', str(dest)]

  try:
    res = subprocess.run(
        args,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
  except subprocess.TimeoutExpired as e:
    raise TranscodeError(f'{binary} timed out after {timeout}s') from e
  except OSError as e:
    raise TranscodeError(f'failed to run {binary}: {e}') from e

  if res.returncode != 0:
    raise TranscodeError(f'{binary} failed with exit code {res.returncode}: {res.stderr.strip()}')

  if not dest.is_file() or dest.stat().st_size == 0:
    raise TranscodeError(f'{binary} produced no output: {dest}')
