"""Image acquisition: turn bytes, files, or URLs into RGB pixel arrays.

The detection pipeline only accepts decoded HxWx3 RGB uint8 arrays; every
source is resolved here first.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import cv2
import httpx
import numpy as np

from deepfakex.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from deepfakex.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BytesSource:
    data: bytes


@dataclass(frozen=True)
class FileSource:
    path: Path


@dataclass(frozen=True)
class RemoteUrlSource:
    url: str


ImageSource = BytesSource | FileSource | RemoteUrlSource


def decode_image(image_bytes: bytes, max_file_size: int, max_image_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 array.

    EXIF orientation is applied, so phone photos come out upright. Alpha is
    dropped and grayscale is expanded to three channels.

    Raises:
        ImageDecodeError: If the bytes are empty, too large, undecodable,
            or the decoded image exceeds ``max_image_pixels``.
    """
    if not image_bytes:
        raise ImageDecodeError("Image is empty")
    if len(image_bytes) > max_file_size:
        raise ImageDecodeError(f"Image is {len(image_bytes)} bytes, limit is {max_file_size}")

    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    # IMREAD_UNCHANGED would skip the EXIF rotation.
    decoded = cv2.imdecode(buffer, cv2.IMREAD_COLOR | cv2.IMREAD_ANYDEPTH)
    if decoded is None:
        raise ImageDecodeError("Unsupported or corrupt image data")

    height, width = decoded.shape[:2]
    if height * width > max_image_pixels:
        raise ImageDecodeError(f"Image has {height * width} pixels, limit is {max_image_pixels}")

    if decoded.dtype != np.uint8:
        # 16-bit PNG/TIFF
        decoded = (decoded / 257).astype(np.uint8)
    return cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB)


def _is_public_address(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


def _reject_private_host(request: httpx.Request) -> None:
    """Request hook: refuse URLs that resolve to loopback or private networks.

    Runs for every hop, so redirects are checked too.
    """
    host = request.url.host
    port = request.url.port or (443 if request.url.scheme == "https" else 80)
    try:
        infos = socket.getaddrinfo(host, port, proto=socket.IPPROTO_TCP)
    except socket.gaierror as exc:
        raise ImageDecodeError(f"Could not resolve host {host}: {exc}") from exc

    for info in infos:
        if not _is_public_address(info[4][0]):
            raise ImageDecodeError(f"Refusing to fetch from non-public address {host}")


def fetch_bytes(
    url: str,
    timeout: float,
    max_file_size: int,
    *,
    allow_private: bool = False,
    transport: httpx.BaseTransport | None = None,
) -> bytes:
    """Download ``url`` and return the body.

    The body is streamed and the download stops as soon as it passes
    ``max_file_size``; a too-large ``Content-Length`` is rejected before any
    of the body is read.
    """
    try:
        scheme = httpx.URL(url).scheme
    except httpx.InvalidURL as exc:
        raise ImageDecodeError(f"Invalid image URL {url}: {exc}") from exc
    if scheme not in ("http", "https"):
        raise ImageDecodeError(f"Only http and https URLs are supported: {url}")

    hooks = {} if allow_private else {"request": [_reject_private_host]}
    chunks: list[bytes] = []
    received = 0
    try:
        with (
            httpx.Client(timeout=timeout, follow_redirects=True, event_hooks=hooks, transport=transport) as client,
            client.stream("GET", url) as response,
        ):
            response.raise_for_status()

            declared = response.headers.get("Content-Length", "")
            if declared.isdigit() and int(declared) > max_file_size:
                raise ImageDecodeError(f"Remote image is {declared} bytes, limit is {max_file_size}")

            for chunk in response.iter_bytes():
                received += len(chunk)
                if received > max_file_size:
                    raise ImageDecodeError(f"Remote image is over the {max_file_size} byte limit")
                chunks.append(chunk)
    except httpx.HTTPError as exc:
        raise ImageDecodeError(f"Could not fetch image from {url}: {exc}") from exc

    logger.debug("Fetched %d bytes from %s", received, url)
    return b"".join(chunks)


def load_image(source: ImageSource, settings: Settings) -> NDArray[np.uint8]:
    """Resolve any :data:`ImageSource` to a decoded RGB image."""
    if isinstance(source, BytesSource):
        data = source.data
    elif isinstance(source, FileSource):
        try:
            data = source.path.read_bytes()
        except OSError as exc:
            raise ImageDecodeError(f"Could not read {source.path}: {exc}") from exc
    elif isinstance(source, RemoteUrlSource):
        data = fetch_bytes(
            source.url,
            settings.fetch_timeout,
            settings.max_file_size,
            allow_private=settings.allow_private_urls,
        )
    else:
        raise TypeError(f"Unsupported image source: {type(source).__name__}")

    return decode_image(data, settings.max_file_size, settings.max_image_pixels)
