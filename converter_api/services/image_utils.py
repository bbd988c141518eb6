from __future__ import annotations
from typing import Tuple
import numpy as np
from PIL import Image

from converter_api.services.image_models import RawImageBuffer


_PIL_MODES = {1: "L", 2: "LA", 3: "RGB", 4: "RGBA"}


def pil_mode_for(channels: int) -> str:
	return _PIL_MODES[channels]


def to_pil_image(buf: RawImageBuffer) -> Image.Image:
	return Image.frombytes(pil_mode_for(buf.channels), (buf.width, buf.height), buf.data)


def flatten_alpha(buf: RawImageBuffer, background: Tuple[int, int, int] = (255, 255, 255)) -> RawImageBuffer:
	"""Composite alpha over a solid background: RGBA -> RGB, LA -> L."""
	if not buf.has_alpha:
		return buf
	arr = buf.as_array().astype(np.float32)
	color = arr[..., :-1]
	alpha = arr[..., -1:] / 255.0
	bg = np.asarray(background if color.shape[2] == 3 else background[:1], dtype=np.float32)
	out = color * alpha + bg * (1.0 - alpha)
	return RawImageBuffer.from_array((np.clip(out, 0.0, 255.0) + 0.5).astype(np.uint8))


def widen_gray(buf: RawImageBuffer) -> RawImageBuffer:
	"""L -> RGB, LA -> RGBA; color buffers pass through."""
	if buf.channels >= 3:
		return buf
	arr = buf.as_array()
	gray = arr[..., :1]
	rgb = np.repeat(gray, 3, axis=2)
	if buf.channels == 2:
		rgb = np.concatenate([rgb, arr[..., 1:2]], axis=2)
	return RawImageBuffer.from_array(rgb)


def adapt_channels(buf: RawImageBuffer, fmt: str) -> RawImageBuffer:
	"""
	Reshape channels into something the target can hold.
	JPEG takes gray or RGB only; WebP takes RGB or RGBA only.
	"""
	if fmt == "jpeg":
		return flatten_alpha(buf)
	if fmt == "webp":
		return widen_gray(buf)
	return buf


def gradient_test_pattern(width: int = 100, height: int = 100) -> RawImageBuffer:
	"""R ramps along x, G ramps along y, B fixed at 128."""
	xs = (np.arange(width, dtype=np.int32) * 255) // width
	ys = (np.arange(height, dtype=np.int32) * 255) // height
	arr = np.empty((height, width, 3), dtype=np.uint8)
	arr[..., 0] = xs[np.newaxis, :]
	arr[..., 1] = ys[:, np.newaxis]
	arr[..., 2] = 128
	return RawImageBuffer.from_array(arr)
