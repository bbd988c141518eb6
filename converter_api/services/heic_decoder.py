from __future__ import annotations

import logging
import struct
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

import pillow_heif

from converter_api.services.errors import DecodeError, ErrorCode, InputError, UnsupportedFormatError
from converter_api.services.image_models import DecodedImage, MetadataBundle, RawImageBuffer, SourceInfo
from converter_api.services.image_utils import gradient_test_pattern
from converter_api.services.logging_setup import get_logger
from converter_api.services.metadata import extract_bundle
from converter_api.services.settings import SUPPORTED_INPUT_FORMATS, get_settings, normalize_extension


Source = Union[str, Path, bytes, bytearray, memoryview]

# Containers whose item table can hold Exif/XMP blocks
METADATA_CAPABLE_FORMATS = ("heic", "heif", "hif", "avif")

HEIF_BRANDS = frozenset({
	"heic", "heix", "heim", "heis", "hevc", "hevx", "hevm", "hevs",
	"mif1", "mif2", "msf1", "miaf", "avif", "avis", "avci", "avcs",
})

# libheif surfaces failures through these from the C extension
CODEC_ERRORS = (RuntimeError, ValueError, OSError, EOFError, TypeError, struct.error)


def read_ftyp_brands(data: bytes) -> List[str]:
	"""Major + compatible brands of a leading ISO-BMFF 'ftyp' box; [] if there is none."""
	if len(data) < 16 or data[4:8] != b"ftyp":
		return []
	(size,) = struct.unpack(">I", data[0:4])
	size = min(size, len(data)) if size >= 16 else 16
	brands = [data[8:12].decode("latin-1")]
	for off in range(16, size - 3, 4):
		brands.append(data[off:off + 4].decode("latin-1"))
	return [b.strip().lower() for b in brands]


def copy_rows(plane, width: int, height: int, channels: int, stride: int) -> bytes:
	"""Copy width*channels bytes out of every stride-long row, leaving the padding behind."""
	row = width * channels
	if stride < row:
		raise DecodeError(f"Codec stride {stride} is shorter than a {row}-byte row")
	view = memoryview(plane).cast("B")
	needed = stride * (height - 1) + row
	if len(view) < needed:
		raise DecodeError(f"Pixel plane holds {len(view)} bytes, expected at least {needed}")
	if stride == row:
		return view[:row * height].tobytes()
	return b"".join(view[r * stride:r * stride + row] for r in range(height))


@contextmanager
def _codec_stage(stage: str, label: str) -> Iterator[None]:
	try:
		yield
	except DecodeError:
		raise
	except MemoryError as exc:
		raise DecodeError(f"{stage} failed for {label}: out of memory", ErrorCode.MEMORY_ALLOCATION) from exc
	except CODEC_ERRORS as exc:
		raise DecodeError(f"{stage} failed for {label}: {exc}") from exc


@contextmanager
def _heif_session(data: bytes, label: str) -> Iterator["pillow_heif.HeifFile"]:
	"""
	Open the container for the duration of the block.
	The container object and any planes it decoded are dropped on every exit path.
	"""
	heif_file = None
	try:
		with _codec_stage("Reading HEIF container", label):
			heif_file = pillow_heif.open_heif(data, convert_hdr_to_8bit=True)
			if len(heif_file) == 0:
				raise DecodeError(f"No images in container: {label}")
		yield heif_file
	finally:
		heif_file = None


class HeicDecoder:
	def __init__(
		self,
		logger: Optional[logging.Logger] = None,
		max_pixels: Optional[int] = None,
		allow_synthetic_fallback: bool = False,
	) -> None:
		self.logger = logger or get_logger("decoder")
		self.max_pixels = max_pixels if max_pixels is not None else get_settings().max_pixels
		# test harness only: substitute a gradient when the codec fails
		self.allow_synthetic_fallback = allow_synthetic_fallback

	# ------------------------------------------------------------ capability

	@staticmethod
	def is_format_supported(name: str) -> bool:
		return normalize_extension(name) in SUPPORTED_INPUT_FORMATS

	@staticmethod
	def get_supported_formats() -> List[str]:
		return list(SUPPORTED_INPUT_FORMATS)

	@staticmethod
	def carries_metadata(source: Source) -> bool:
		if isinstance(source, (bytes, bytearray, memoryview)):
			return True
		return normalize_extension(Path(source).suffix) in METADATA_CAPABLE_FORMATS

	# ------------------------------------------------------------ input

	def _read_source(self, source: Source) -> Tuple[bytes, str, Optional[str]]:
		if isinstance(source, (bytes, bytearray, memoryview)):
			data = bytes(source)
			label = "<memory>"
			if not data:
				raise DecodeError("Input data is empty")
			brands = read_ftyp_brands(data)
			if not HEIF_BRANDS.intersection(brands):
				raise UnsupportedFormatError("Input data is not a HEIF container (no recognized ftyp brand)")
			return data, label, brands[0]

		path = Path(source)
		ext = normalize_extension(path.suffix)
		if not self.is_format_supported(ext):
			raise UnsupportedFormatError(f"Unsupported file format: {ext or '<none>'} ({path})")
		if not path.exists():
			raise InputError(f"File does not exist: {path}", ErrorCode.FILE_NOT_FOUND)
		if not path.is_file():
			raise InputError(f"Not a file: {path}", ErrorCode.FILE_NOT_FOUND)
		try:
			data = path.read_bytes()
		except PermissionError as exc:
			raise InputError(f"Cannot read {path}: {exc}", ErrorCode.READ_PERMISSION) from exc
		except OSError as exc:
			raise InputError(f"Failed to read {path}: {exc}", ErrorCode.READ_PERMISSION) from exc
		if not data:
			raise DecodeError(f"File is empty: {path}")
		brands = read_ftyp_brands(data)
		return data, str(path), (brands[0] if brands else None)

	@staticmethod
	def _info_from(heif_file, brand: Optional[str]) -> SourceInfo:
		width, height = heif_file.size
		return SourceInfo(
			width=int(width),
			height=int(height),
			has_alpha=bool(heif_file.has_alpha),
			bit_depth=int(heif_file.info.get("bit_depth", 8) or 8),
			image_count=len(heif_file),
			brand=brand,
		)

	# ------------------------------------------------------------ operations

	def probe(self, source: Source) -> SourceInfo:
		"""Container headers only; no pixel decode."""
		data, label, brand = self._read_source(source)
		with _heif_session(data, label) as heif_file:
			with _codec_stage("Reading image handle", label):
				return self._info_from(heif_file, brand)

	def decode(self, source: Source) -> DecodedImage:
		data, label, brand = self._read_source(source)
		try:
			return self._decode_bytes(data, label, brand)
		except DecodeError as exc:
			if not self.allow_synthetic_fallback:
				self.logger.error("Decode error: %s", exc.message)
				raise
			self.logger.warning("Decode failed (%s); substituting synthetic test pattern", exc.message)
			buf = gradient_test_pattern()
			info = SourceInfo(width=buf.width, height=buf.height, has_alpha=False, bit_depth=8, brand=brand)
			return DecodedImage(buffer=buf, metadata=MetadataBundle(), info=info, synthetic=True)

	def _decode_bytes(self, data: bytes, label: str, brand: Optional[str]) -> DecodedImage:
		with _heif_session(data, label) as heif_file:
			with _codec_stage("Reading primary image handle", label):
				info = self._info_from(heif_file, brand)
			if info.width <= 0 or info.height <= 0:
				raise DecodeError(f"Invalid image dimensions {info.width}x{info.height}: {label}")
			if info.width * info.height > self.max_pixels:
				raise DecodeError(
					f"Image {info.width}x{info.height} exceeds the {self.max_pixels}-pixel limit: {label}",
					ErrorCode.MEMORY_ALLOCATION,
				)
			if info.is_panorama:
				self.logger.info("Panorama-like aspect ratio detected (%dx%d)", info.width, info.height)

			channels = info.channels
			with _codec_stage("Decoding pixel plane", label):
				mode = heif_file.mode
				if mode == ("RGBA" if info.has_alpha else "RGB"):
					pixels = copy_rows(heif_file.data, info.width, info.height, channels, int(heif_file.stride))
				else:
					# monochrome or high bit-depth planes: let Pillow expand to 8-bit RGB(A)
					img = heif_file.to_pillow().convert("RGBA" if info.has_alpha else "RGB")
					pixels = img.tobytes()

			buffer = RawImageBuffer(data=pixels, width=info.width, height=info.height, channels=channels, bit_depth=8)
			metadata = extract_bundle(heif_file.info)

		self.logger.info(
			"Decoded image: %dx%d with %d channels (%s)",
			buffer.width, buffer.height, buffer.channels, repr(metadata),
		)
		return DecodedImage(buffer=buffer, metadata=metadata, info=info)
