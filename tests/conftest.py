from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
	sys.path.insert(0, str(ROOT))

import pillow_heif  # noqa: E402

from converter_api.services.conversion_job import get_orchestrator  # noqa: E402
from converter_api.services.image_models import RawImageBuffer  # noqa: E402
from converter_api.services.settings import get_settings  # noqa: E402


class FakeHeifFile:
	"""Stands in for pillow_heif.HeifFile: padded rows, an info mapping, len() images."""

	def __init__(self, pixels: np.ndarray, stride_pad: int = 0, info: Optional[Dict[str, Any]] = None, count: int = 1):
		if pixels.ndim == 2:
			pixels = pixels[..., np.newaxis]
		h, w, c = pixels.shape
		self._pixels = pixels
		self._count = count
		self.size = (w, h)
		self.mode = {1: "L", 3: "RGB", 4: "RGBA"}[c]
		self.has_alpha = c == 4
		self.stride = w * c + stride_pad
		rows = np.full((h, self.stride), 0xEE, dtype=np.uint8)
		rows[:, :w * c] = pixels.reshape(h, w * c)
		self.data = rows.tobytes()
		self.info: Dict[str, Any] = {"bit_depth": 8}
		self.info.update(info or {})

	def __len__(self) -> int:
		return self._count

	def to_pillow(self) -> Image.Image:
		arr = self._pixels[..., 0] if self._pixels.shape[2] == 1 else self._pixels
		return Image.fromarray(np.ascontiguousarray(arr))


def ramp_pixels(width: int, height: int, channels: int = 3) -> np.ndarray:
	"""Deterministic, non-uniform pixels."""
	idx = np.arange(width * height * channels, dtype=np.uint32)
	return ((idx * 37 + 11) % 256).astype(np.uint8).reshape(height, width, channels)


@pytest.fixture(autouse=True)
def fresh_settings():
	get_settings.cache_clear()
	get_orchestrator.cache_clear()
	yield
	get_settings.cache_clear()
	get_orchestrator.cache_clear()


@pytest.fixture
def logger() -> logging.Logger:
	# outside the package namespace so records reach caplog
	return logging.getLogger("heic_test")


@pytest.fixture
def rgb_buffer() -> RawImageBuffer:
	return RawImageBuffer.from_array(ramp_pixels(7, 5, 3))


@pytest.fixture
def make_heif():
	def _make(width: int = 8, height: int = 6, channels: int = 3, **kwargs: Any) -> FakeHeifFile:
		return FakeHeifFile(ramp_pixels(width, height, channels), **kwargs)
	return _make


@pytest.fixture
def fake_codec(monkeypatch):
	"""
	Replace pillow_heif.open_heif. install(obj) makes every open return obj,
	or raise it when obj is an exception. Returns the list of recorded calls.
	"""
	calls: List[int] = []

	def install(obj: Any) -> List[int]:
		def _open(data, **kwargs):
			calls.append(len(data))
			if isinstance(obj, BaseException):
				raise obj
			return obj
		monkeypatch.setattr(pillow_heif, "open_heif", _open)
		return calls

	return install


@pytest.fixture
def heic_source(tmp_path: Path) -> Path:
	"""A placeholder container; its bytes only reach the (faked) codec."""
	p = tmp_path / "photo.heic"
	p.write_bytes(b"\x00\x00\x00\x18ftypheic\x00\x00\x00\x00mif1heic")
	return p


@pytest.fixture
def real_heic(tmp_path: Path):
	"""Encode a small HEIC with pillow_heif, or skip when no HEVC encoder is built in."""
	import piexif

	def _make(width: int = 16, height: int = 12, exif_make: bytes = b"TestCam") -> Path:
		img = Image.fromarray(ramp_pixels(width, height, 3))
		exif = piexif.dump({"0th": {piexif.ImageIFD.Make: exif_make}})
		path = tmp_path / "real.heic"
		try:
			heif = pillow_heif.from_pillow(img)
			heif.save(str(path), quality=90, exif=exif)
		except Exception as exc:  # encoder missing from this libheif build
			pytest.skip(f"HEIC encoder unavailable: {exc}")
		return path

	return _make
