from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import requests

from rom_errors import InputError

logger = logging.getLogger(__name__)


def _is_url(text: str) -> bool:
    return text.startswith("http://") or text.startswith("https://")


def fetch_bytes(url: str, timeout: float = 30.0) -> bytes:
    logger.info(f"Fetching {url}")
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return response.content


def read_source(source: Any, *, timeout: float = 30.0) -> bytes:
    """
    Resolve a mesh or archive source to raw bytes.

    Accepts an in-memory buffer (bytes), a byte view (bytearray, memoryview),
    an http(s) URL, or a local path.
    """
    if isinstance(source, bytes):
        return source
    if isinstance(source, (bytearray, memoryview)):
        return bytes(source)
    if isinstance(source, str) and _is_url(source):
        return fetch_bytes(source, timeout=timeout)
    if isinstance(source, (str, os.PathLike)):
        path = Path(source)
        if not path.is_file():
            raise InputError(f"Source file not found: {path}")
        return path.read_bytes()
    raise InputError(
        f"Unsupported source type {type(source).__name__}; expected bytes, a byte view, a URL or a path"
    )
