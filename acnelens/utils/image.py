"""Image decoding and preprocessing shared by training and inference."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Union

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from acnelens.core.constants import (
    IMAGE_CHANNELS,
    IMAGE_SIZE,
    PIXEL_SCALE,
    RESIZE_INTERPOLATION,
    SUPPORTED_IMAGE_EXTENSIONS,
)
from acnelens.core.errors import DecodeError

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, bytearray, memoryview, str, Path, np.ndarray, Image.Image]

# Channel counts accepted for raw pixel arrays
GRAY_CHANNELS = 1
RGBA_CHANNELS = 4

INTERPOLATION_METHODS = {
    "nearest": cv2.INTER_NEAREST,
    "bilinear": cv2.INTER_LINEAR,
    "bicubic": cv2.INTER_CUBIC,
    "area": cv2.INTER_AREA,
}


class ImageUtils:
    """Utilities for decoding images into RGB pixel arrays."""

    @staticmethod
    def is_supported_image(
        path: Path, extensions: frozenset[str] = SUPPORTED_IMAGE_EXTENSIONS
    ) -> bool:
        """Check whether a file has an accepted image extension."""
        return path.is_file() and path.suffix.lower() in extensions

    @staticmethod
    def decode_bytes(data: bytes | bytearray | memoryview) -> np.ndarray:
        """Decode encoded image bytes into an HxWx3 RGB array (see ``pil_to_rgb``)."""
        if len(data) == 0:
            msg = "Cannot decode empty image buffer"
            raise DecodeError(msg, "EMPTY_BUFFER")
        try:
            with Image.open(io.BytesIO(bytes(data))) as img:
                img.load()
                oriented = ImageOps.exif_transpose(img)
                return ImageUtils.pil_to_rgb(oriented)
        except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
            msg = f"Unreadable image data: {e}"
            raise DecodeError(msg, "UNREADABLE_IMAGE") from e
        except Image.DecompressionBombError as e:
            msg = f"Image exceeds the decoder pixel limit: {e}"
            raise DecodeError(msg, "IMAGE_TOO_LARGE") from e

    @staticmethod
    def load_image(image_path: Path) -> np.ndarray:
        """Load an image file into an HxWx3 RGB array."""
        image_path = Path(image_path)
        if not image_path.is_file():
            msg = f"Image file not found: {image_path}"
            raise DecodeError(msg, "FILE_NOT_FOUND")
        try:
            data = image_path.read_bytes()
        except OSError as e:
            msg = f"Error reading image {image_path}: {e}"
            raise DecodeError(msg, "READ_FAILED") from e
        image = ImageUtils.decode_bytes(data)
        logger.debug("Loaded image: %s, shape: %s", image_path, image.shape)
        return image

    @staticmethod
    def pil_to_rgb(image: Image.Image) -> np.ndarray:
        """Convert a PIL image to an HxWx3 array, dropping alpha.

        8-bit modes become uint8. 16-bit and 32-bit integer modes become
        uint16 and float mode ``F`` stays float32, so that
        :meth:`array_to_rgb` scales them exactly like raw arrays.
        """
        if image.mode.startswith("I") or image.mode == "F":
            return ImageUtils._high_depth_to_rgb(image)
        if image.mode != "RGB":
            image = image.convert("RGB")
        return np.asarray(image, dtype=np.uint8)

    @staticmethod
    def _high_depth_to_rgb(image: Image.Image) -> np.ndarray:
        pixels = np.asarray(image)
        if image.mode == "F":
            pixels = pixels.astype(np.float32)
        else:
            # Mode "I" holds int32 values; 16-bit PNGs fit the uint16 range
            max_value = np.iinfo(np.uint16).max
            pixels = np.clip(pixels, 0, max_value).astype(np.uint16)
        if pixels.ndim == 2:
            pixels = np.repeat(pixels[:, :, np.newaxis], IMAGE_CHANNELS, axis=2)
        return pixels

    @staticmethod
    def array_to_rgb(image: np.ndarray) -> np.ndarray:
        """Coerce a pixel array to HxWx3 float32 on the 0-255 scale."""
        if image.size == 0 or image.ndim not in (2, 3):
            msg = f"Invalid image array shape: {image.shape}"
            raise DecodeError(msg, "INVALID_SHAPE")

        if image.ndim == 2:
            image = image[:, :, np.newaxis]
        channels = image.shape[2]
        if channels == GRAY_CHANNELS:
            image = np.repeat(image, IMAGE_CHANNELS, axis=2)
        elif channels == RGBA_CHANNELS:
            image = image[:, :, :IMAGE_CHANNELS]
        elif channels != IMAGE_CHANNELS:
            msg = f"Unsupported channel count: {channels}"
            raise DecodeError(msg, "INVALID_CHANNELS")

        if image.dtype == np.uint8:
            return image.astype(np.float32)
        if image.dtype == np.uint16:
            return image.astype(np.float32) * (PIXEL_SCALE / np.iinfo(np.uint16).max)
        if np.issubdtype(image.dtype, np.floating):
            if not np.all(np.isfinite(image)):
                msg = "Image array contains non-finite values"
                raise DecodeError(msg, "NON_FINITE")
            # Float pixels are taken to be on the [0, 1] scale
            return np.clip(image.astype(np.float32), 0.0, 1.0) * PIXEL_SCALE
        msg = f"Unsupported pixel dtype: {image.dtype}"
        raise DecodeError(msg, "INVALID_DTYPE")

    @staticmethod
    def resize(
        image: np.ndarray, size: int, interpolation: str = RESIZE_INTERPOLATION
    ) -> np.ndarray:
        """Resize an HxWxC array to size x size."""
        if interpolation not in INTERPOLATION_METHODS:
            msg = (
                f"Invalid interpolation: {interpolation}. Must be one of "
                f"{list(INTERPOLATION_METHODS.keys())}"
            )
            raise ValueError(msg)
        try:
            return cv2.resize(
                image,
                (size, size),
                interpolation=INTERPOLATION_METHODS[interpolation],
            )
        except cv2.error as e:
            msg = f"Failed to resize image of shape {image.shape}: {e}"
            raise DecodeError(msg, "RESIZE_FAILED") from e


class ImagePreprocessor:
    """Turn any supported image input into a normalized square tensor.

    The output is a float32 array of shape (size, size, 3) with values in
    [0, 1]. Training and inference must share one configuration, which is why
    trained artifacts record ``image_size`` and ``interpolation``.
    """

    def __init__(
        self,
        image_size: int = IMAGE_SIZE,
        interpolation: str = RESIZE_INTERPOLATION,
    ) -> None:
        if image_size < 1:
            msg = f"image_size must be >= 1, got {image_size}"
            raise ValueError(msg)
        if interpolation not in INTERPOLATION_METHODS:
            msg = f"Invalid interpolation: {interpolation}"
            raise ValueError(msg)
        self.image_size = image_size
        self.interpolation = interpolation

    def preprocess(self, image: ImageInput) -> np.ndarray:
        """Decode, coerce to RGB, resize and scale an image to [0, 1]."""
        pixels = ImageUtils.array_to_rgb(self._decode(image))
        resized = ImageUtils.resize(pixels, self.image_size, self.interpolation)
        return np.clip(resized / PIXEL_SCALE, 0.0, 1.0).astype(np.float32, copy=False)

    @property
    def output_shape(self) -> tuple[int, int, int]:
        """Shape of every preprocessed tensor."""
        return (self.image_size, self.image_size, IMAGE_CHANNELS)

    def describe(self) -> dict[str, int | str]:
        """Record of the preprocessing applied, stored with trained artifacts."""
        return {"image_size": self.image_size, "interpolation": self.interpolation}

    @staticmethod
    def _decode(image: ImageInput) -> np.ndarray:
        if isinstance(image, np.ndarray):
            return image
        if isinstance(image, Image.Image):
            return ImageUtils.pil_to_rgb(image)
        if isinstance(image, (bytes, bytearray, memoryview)):
            return ImageUtils.decode_bytes(image)
        if isinstance(image, (str, Path)):
            return ImageUtils.load_image(Path(image))
        msg = f"Unsupported image input type: {type(image).__name__}"
        raise DecodeError(msg, "UNSUPPORTED_INPUT")


def preprocess(image: ImageInput) -> np.ndarray:
    """Preprocess an image with the default 224x224 bilinear settings."""
    return ImagePreprocessor().preprocess(image)
