import os
from typing import Optional

CONTENT_TYPES = {
    '.jpeg': 'image/jpeg',
    '.jpg': 'image/jpeg',
    '.gif': 'image/gif',
    '.png': 'image/png',
    '.webp': 'image/webp',
}


def content_type(path: str) -> Optional[str]:
  _, ext = os.path.splitext(path.lower())
  return CONTENT_TYPES.get(ext)
