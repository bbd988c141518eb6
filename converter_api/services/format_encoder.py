from __future__ import annotations

import io
import logging
import os
import struct
import tempfile
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple, Union

from PIL import Image, features
from PIL.PngImagePlugin import PngInfo

from converter_api.services.bmp_codec import encode_bmp
from converter_api.services.errors import (
	ConversionError,
	EncodeError,
	ErrorCode,
	InvalidInputError,
	UnsupportedFormatError,
)
from converter_api.services.image_models import EncodeOptions, EncodeResult, MetadataBundle, MetadataKind, RawImageBuffer
from converter_api.services.image_utils import to_pil_image
from converter_api.services.logging_setup import get_logger
from converter_api.services.metadata import EXIF_HEADER, embed_jpeg_metadata
from converter_api.services.png_writer import text_entries, write_png
from converter_api.services.settings import canonical_format


Serialized = Tuple[bytes, List[MetadataKind], List[str]]

TIFF_TAG_ORIENTATION = 274
TIFF_TAG_XMP = 700
TIFF_TAG_IPTC = 33723
ORIENTATION_TOPLEFT = 1
SUB_IFD_POINTERS = {0x8769: "Exif", 0x8825: "GPS", 0xA005: "Interop"}

# Pillow surfaces encoder failures through these; libtiff tag errors arrive as RuntimeError
CODEC_ERRORS = (OSError, ValueError, TypeError, KeyError, SystemError, SyntaxError, RuntimeError, struct.error)

# read once: the process umask decides the mode of files we create
_UMASK = os.umask(0)
os.umask(_UMASK)


def probe_codec_support() -> Dict[str, bool]:
	"""Which target formats this Pillow build can write. BMP is hand-built and always available."""
	return {
		"png": features.check("zlib"),
		"jpeg": features.check("jpg"),
		"webp": features.check("webp"),
		"bmp": True,
		"tiff": features.check("libtiff"),
	}


def tiff_compression_for(level: int) -> str:
	"""
	Coarse bucketing of the 0-9 level onto a TIFF scheme; not a quality control.
	0 none, 1-3 LZW, 4-6 deflate, 7-9 JPEG.
	"""
	if level <= 0:
		return "raw"
	if level <= 3:
		return "tiff_lzw"
	if level <= 6:
		return "tiff_adobe_deflate"
	return "jpeg"


@contextmanager
def atomic_output(destination: Path) -> Iterator[BinaryIO]:
	"""
	Yield a handle on a temporary sibling of destination; rename it into place only after
	a clean close. On any failure the temporary file is removed and destination is untouched.
	"""
	fd, tmp = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".part", dir=str(destination.parent))
	try:
		with os.fdopen(fd, "wb") as fh:
			yield fh
			fh.flush()
			os.fsync(fh.fileno())
		# mkstemp creates 0600; match what open() would have produced
		os.chmod(tmp, 0o666 & ~_UMASK)
		os.replace(tmp, destination)
	except BaseException:
		with suppress(FileNotFoundError):
			os.unlink(tmp)
		raise


class FormatEncoder:
	# canonical name plus aliases, in listing order
	_LISTING = (("png", ("png",)), ("jpeg", ("jpg", "jpeg")), ("webp", ("webp",)), ("bmp", ("bmp",)), ("tiff", ("tiff", "tif")))

	def __init__(self, logger: Optional[logging.Logger] = None, support: Optional[Dict[str, bool]] = None) -> None:
		self.logger = logger or get_logger("encoder")
		self._support = dict(support) if support is not None else probe_codec_support()
		for name, ok in self._support.items():
			if not ok:
				self.logger.warning("%s support not available in this Pillow build", name.upper())
		self._serializers: Dict[str, Callable[[RawImageBuffer, EncodeOptions], Serialized]] = {
			"jpeg": self._encode_jpeg,
			"png": self._encode_png,
			"bmp": self._encode_bmp,
			"tiff": self._encode_tiff,
			"webp": self._encode_webp,
		}

	# ------------------------------------------------------------ capability

	def get_supported_formats(self) -> List[str]:
		out: List[str] = []
		for canonical, names in self._LISTING:
			if self._support.get(canonical):
				out.extend(names)
		return out

	def validate_format(self, name: str) -> bool:
		fmt = canonical_format(name or "")
		return bool(fmt and self._support.get(fmt))

	# ------------------------------------------------------------ encode

	def _validate(self, buf: RawImageBuffer, options: EncodeOptions) -> str:
		if buf is None or not buf.data:
			raise InvalidInputError("Invalid image data")
		if buf.width <= 0 or buf.height <= 0:
			raise InvalidInputError(f"Invalid image dimensions {buf.width}x{buf.height}")
		if not 1 <= buf.channels <= 4:
			raise InvalidInputError(f"Invalid number of channels: {buf.channels}")
		if buf.bit_depth != 8:
			raise InvalidInputError(f"Unsupported bit depth: {buf.bit_depth}")
		if len(buf.data) != buf.expected_size:
			raise InvalidInputError(f"Pixel data holds {len(buf.data)} bytes, shape needs {buf.expected_size}")
		fmt = canonical_format(options.format or "")
		if fmt is None or not self._support.get(fmt):
			raise UnsupportedFormatError(f"Unsupported format: {options.format}")
		return fmt

	def encode(self, buf: RawImageBuffer, destination: Union[str, Path], options: EncodeOptions) -> EncodeResult:
		fmt = self._validate(buf, options)
		path = Path(destination)
		try:
			payload, embedded, warnings = self._serializers[fmt](buf, options)
		except ConversionError:
			raise
		except MemoryError as exc:
			raise EncodeError(f"Out of memory encoding {fmt.upper()}", ErrorCode.MEMORY_ALLOCATION) from exc
		except CODEC_ERRORS as exc:
			raise EncodeError(f"{fmt.upper()} encoding failed: {exc}") from exc

		try:
			with atomic_output(path) as fh:
				fh.write(payload)
		except PermissionError as exc:
			raise EncodeError(f"Cannot open file for writing: {path} ({exc})", ErrorCode.WRITE_PERMISSION) from exc
		except OSError as exc:
			raise EncodeError(f"Failed writing {path}: {exc}") from exc

		for w in warnings:
			self.logger.warning(w)
		self.logger.info("Successfully encoded image to: %s (%d bytes)", path, len(payload))
		if embedded:
			self.logger.info("Preserved metadata in output file: %s", ", ".join(k.value for k in embedded))
		return EncodeResult(
			path=str(path),
			format=fmt,
			size_bytes=len(payload),
			embedded=tuple(embedded),
			warnings=tuple(warnings),
		)

	# ------------------------------------------------------------ serializers

	def _encode_jpeg(self, buf: RawImageBuffer, options: EncodeOptions) -> Serialized:
		if buf.channels not in (1, 3):
			raise InvalidInputError("JPEG only supports 1 (grayscale) or 3 (RGB) channels")
		out = io.BytesIO()
		to_pil_image(buf).save(out, format="JPEG", quality=options.quality, progressive=options.progressive)
		data, embedded, warnings = embed_jpeg_metadata(out.getvalue(), options.embeddable())
		return data, embedded, warnings

	def _encode_png(self, buf: RawImageBuffer, options: EncodeOptions) -> Serialized:
		entries, warnings = text_entries(options.embeddable())
		if options.interlace:
			# Pillow only writes non-interlaced PNG
			data = write_png(buf, options.compression_level, interlace=True, entries=entries)
		else:
			info = PngInfo()
			for e in entries:
				if e.international:
					info.add_itxt(e.keyword, e.text)
				else:
					info.add_text(e.keyword, e.text)
			out = io.BytesIO()
			to_pil_image(buf).save(out, format="PNG", compress_level=options.compression_level, pnginfo=info)
			data = out.getvalue()
		return data, [e.kind for e in entries], warnings

	def _encode_bmp(self, buf: RawImageBuffer, options: EncodeOptions) -> Serialized:
		warnings: List[str] = []
		bundle = options.embeddable()
		if bundle:
			warnings.append("BMP cannot carry metadata; dropped " + ", ".join(k.value for k in bundle))
		return encode_bmp(buf), [], warnings

	def _encode_tiff(self, buf: RawImageBuffer, options: EncodeOptions) -> Serialized:
		warnings: List[str] = []
		compression = tiff_compression_for(options.compression_level)
		if compression == "jpeg" and buf.channels in (2, 4):
			compression = "tiff_adobe_deflate"
			warnings.append("JPEG-in-TIFF cannot hold alpha; using deflate")

		img = to_pil_image(buf)
		params: Dict[str, object] = {"compression": compression}
		if compression == "jpeg":
			params["quality"] = options.quality

		bundle = options.embeddable()
		if bundle:
			try:
				tags, kinds, notes = self._tiff_tags(bundle)
				data = self._save_tiff(img, params, tags)
				return data, kinds, warnings + notes
			except CODEC_ERRORS as exc:
				warnings.append(f"TIFF metadata not embedded ({exc}); wrote pixels only")
		return self._save_tiff(img, params, {TIFF_TAG_ORIENTATION: ORIENTATION_TOPLEFT}), [], warnings

	@staticmethod
	def _tiff_tags(bundle: MetadataBundle) -> Tuple[Image.Exif, List[MetadataKind], List[str]]:
		"""
		EXIF IFD0 as the tag table, with XMP and IPTC added as tags.
		Sub-IFD pointers (Exif, GPS, Interop) are dropped: libtiff cannot write nested directories.
		"""
		tags = Image.Exif()
		kinds: List[MetadataKind] = []
		notes: List[str] = []
		exif = bundle.block(MetadataKind.EXIF)
		if exif:
			tags.load(EXIF_HEADER + exif)
			dropped = [name for tag, name in SUB_IFD_POINTERS.items() if tag in tags]
			for tag in SUB_IFD_POINTERS:
				if tag in tags:
					del tags[tag]
			if dropped:
				notes.append("TIFF keeps EXIF IFD0 only; dropped sub-IFDs: " + ", ".join(dropped))
			kinds.append(MetadataKind.EXIF)
		# pixels are stored as decoded, whatever the camera orientation was
		tags[TIFF_TAG_ORIENTATION] = ORIENTATION_TOPLEFT
		xmp = bundle.block(MetadataKind.XMP)
		if xmp:
			tags[TIFF_TAG_XMP] = xmp
			kinds.append(MetadataKind.XMP)
		iptc = bundle.block(MetadataKind.IPTC)
		if iptc:
			tags[TIFF_TAG_IPTC] = iptc
			kinds.append(MetadataKind.IPTC)
		return tags, kinds, notes

	@staticmethod
	def _save_tiff(img: Image.Image, params: Dict[str, object], tags) -> bytes:
		out = io.BytesIO()
		img.save(out, format="TIFF", tiffinfo=tags, **params)
		return out.getvalue()

	def _encode_webp(self, buf: RawImageBuffer, options: EncodeOptions) -> Serialized:
		if buf.channels not in (3, 4):
			raise InvalidInputError("WebP only supports 3 (RGB) or 4 (RGBA) channels")
		bundle = options.embeddable()
		kwargs: Dict[str, object] = {"quality": options.quality, "lossless": options.lossless}
		embedded: List[MetadataKind] = []
		warnings: List[str] = []
		if bundle.block(MetadataKind.EXIF):
			kwargs["exif"] = EXIF_HEADER + bundle[MetadataKind.EXIF]
			embedded.append(MetadataKind.EXIF)
		if bundle.block(MetadataKind.XMP):
			kwargs["xmp"] = bundle[MetadataKind.XMP]
			embedded.append(MetadataKind.XMP)
		if bundle.block(MetadataKind.IPTC):
			warnings.append("IPTC not embedded: WebP has no IPTC chunk")
		out = io.BytesIO()
		to_pil_image(buf).save(out, format="WEBP", **kwargs)
		return out.getvalue(), embedded, warnings
