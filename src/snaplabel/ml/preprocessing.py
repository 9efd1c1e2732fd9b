"""Image decoding and tensor construction.

Local sources are read up to the size limit and decoded as JPEG. Remote
sources are streamed over HTTP, the way a browser image element would load
them, and dropped as soon as they pass the limit. Both end up as an HxWx3
RGB uint8 grid that is resampled with nearest-neighbour to the profile's
target edge, cast to float32 without rescaling, and given a batch axis:

    [1, target_edge, target_edge, 3], channels R, G, B, values 0..255
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import httpx
import numpy as np
from PIL import Image, UnidentifiedImageError

from snaplabel.ml.errors import DecodeError

if TYPE_CHECKING:
    from types import TracebackType

    from numpy.typing import NDArray

    from snaplabel.ml.inference import InferenceWorker
    from snaplabel.ml.profile import CapabilityProfile
    from snaplabel.ml.resolver import ByteAccess, ResolvedHandle

logger = logging.getLogger(__name__)

_JPEG_FORMATS = frozenset({"JPEG", "MPO"})


class ImageTensor:
    """A model input tensor owned by one classification request.

    The backing array is dropped by :meth:`dispose`; any access afterwards
    raises ``RuntimeError``.
    """

    def __init__(self, data: NDArray[np.float32]) -> None:
        self._data: NDArray[np.float32] | None = data
        self.shape: tuple[int, ...] = tuple(data.shape)
        self.dtype = data.dtype

    @property
    def data(self) -> NDArray[np.float32]:
        if self._data is None:
            raise RuntimeError("Tensor has been disposed")
        return self._data

    @property
    def disposed(self) -> bool:
        return self._data is None

    def dispose(self) -> None:
        self._data = None

    def __enter__(self) -> ImageTensor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()


def resize_nearest_neighbor(image: NDArray[np.uint8], height: int, width: int) -> NDArray[np.uint8]:
    """Resample an HxWxC grid with nearest-neighbour selection.

    Destination pixel ``d`` takes source pixel ``floor(d * in / out)``,
    clamped to the last index. No half-pixel centres, no corner alignment.
    """
    in_h, in_w = image.shape[:2]
    rows = np.minimum((np.arange(height) * in_h) // height, in_h - 1)
    cols = np.minimum((np.arange(width) * in_w) // width, in_w - 1)
    return image[rows[:, None], cols[None, :]]


class TensorBuilder:
    """Builds classifier input tensors from resolved image sources."""

    def __init__(
        self,
        byte_access: ByteAccess,
        worker: InferenceWorker,
        *,
        max_image_pixels: int,
        max_file_size: int,
        remote_timeout: float,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._bytes = byte_access
        self._worker = worker
        self._max_image_pixels = max_image_pixels
        self._max_file_size = max_file_size
        self._remote_timeout = remote_timeout
        self._http_client = http_client

    async def build_tensor(self, resolved: ResolvedHandle, profile: CapabilityProfile) -> ImageTensor:
        """Decode a resolved source into a ``[1, E, E, 3]`` float32 tensor.

        Raises:
            DecodeError: If the source cannot be read or the bytes cannot be decoded.
        """
        edge = profile.target_edge
        if resolved.local_path is not None:
            data = await self._worker.run(self._read_and_decode, resolved.local_path, edge)
        else:
            payload = await self._load_remote(str(resolved.url))
            data = await self._worker.run(self._decode_to_tensor, payload, edge, False)
        return ImageTensor(data)

    # -- Internal -----------------------------------------------------------

    async def _load_remote(self, url: str) -> bytes:
        try:
            if self._http_client is not None:
                return await self._stream_body(self._http_client, url)
            async with httpx.AsyncClient(follow_redirects=True) as client:
                return await self._stream_body(client, url)
        except httpx.HTTPError as exc:
            logger.warning("Loading %s failed: %s", url, exc)
            raise DecodeError(f"Could not load image from {url}") from exc

    async def _stream_body(self, client: httpx.AsyncClient, url: str) -> bytes:
        chunks: list[bytes] = []
        received = 0
        async with client.stream("GET", url, timeout=self._remote_timeout) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > self._max_file_size:
                    raise DecodeError(f"Image at {url} exceeds {self._max_file_size} bytes")
                chunks.append(chunk)
        logger.debug("Loaded %d bytes from %s", received, url)
        return b"".join(chunks)

    def _read_and_decode(self, path: str, edge: int) -> NDArray[np.float32]:
        try:
            payload = self._bytes.read_all_bytes(path, self._max_file_size)
        except OSError as exc:
            logger.warning("Reading %s failed: %s", path, exc)
            raise DecodeError("Could not read image source") from exc
        if len(payload) > self._max_file_size:
            raise DecodeError(f"Image source exceeds {self._max_file_size} bytes")
        return self._decode_to_tensor(payload, edge, True)

    def _decode_to_tensor(self, payload: bytes, edge: int, jpeg_only: bool) -> NDArray[np.float32]:
        pixels = self._decode(payload, jpeg_only=jpeg_only)
        resized = resize_nearest_neighbor(pixels, edge, edge)
        return np.expand_dims(resized.astype(np.float32), axis=0)

    def _decode(self, payload: bytes, *, jpeg_only: bool) -> NDArray[np.uint8]:
        if not payload:
            raise DecodeError("Image data is empty")
        try:
            with Image.open(io.BytesIO(payload)) as img:
                if jpeg_only and img.format not in _JPEG_FORMATS:
                    raise DecodeError(f"Unsupported image format: {img.format}")
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise DecodeError(f"Image has {width * height} pixels, limit is {self._max_image_pixels}")
                img.load()
                return np.asarray(img.convert("RGB"), dtype=np.uint8)
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
            logger.debug("Decoder rejected image: %s", exc)
            raise DecodeError("Could not decode image data") from exc
