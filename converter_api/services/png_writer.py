from __future__ import annotations

import struct
import zlib
from typing import Iterable, List, NamedTuple, Tuple

import numpy as np

from converter_api.services.image_models import MetadataBundle, MetadataKind, RawImageBuffer
from converter_api.services.metadata import describe_exif


PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
COLOR_TYPES = {1: 0, 2: 4, 3: 2, 4: 6}  # gray, gray+alpha, RGB, RGBA
XMP_KEYWORD = "XML:com.adobe.xmp"
EXIF_KEYWORD = "EXIF"

# (x0, y0, dx, dy) for the seven Adam7 passes
ADAM7_PASSES = (
	(0, 0, 8, 8),
	(4, 0, 8, 8),
	(0, 4, 4, 8),
	(2, 0, 4, 4),
	(0, 2, 2, 4),
	(1, 0, 2, 2),
	(0, 1, 1, 2),
)


class TextEntry(NamedTuple):
	kind: MetadataKind
	keyword: str
	text: str
	international: bool


def text_entries(bundle: MetadataBundle) -> Tuple[List[TextEntry], List[str]]:
	"""
	Textual chunks for a metadata bundle, shared by the Pillow and hand-built writers.
	EXIF becomes an annotation only (presence and size), not a copy of the block.
	"""
	entries: List[TextEntry] = []
	warnings: List[str] = []
	exif = bundle.block(MetadataKind.EXIF)
	if exif:
		entries.append(TextEntry(MetadataKind.EXIF, EXIF_KEYWORD, describe_exif(exif), False))
	xmp = bundle.block(MetadataKind.XMP)
	if xmp:
		entries.append(TextEntry(MetadataKind.XMP, XMP_KEYWORD, xmp.decode("utf-8", errors="replace"), True))
	if bundle.block(MetadataKind.IPTC):
		warnings.append("IPTC not embedded: PNG has no IPTC container")
	return entries, warnings


def chunk(kind: bytes, data: bytes) -> bytes:
	return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data) & 0xFFFFFFFF)


def text_chunk(entry: TextEntry) -> bytes:
	keyword = entry.keyword.encode("latin-1")
	if entry.international:
		# keyword, compression flag, method, empty language tag, empty translated keyword
		body = keyword + b"\x00\x00\x00" + b"\x00" + b"\x00" + entry.text.encode("utf-8")
		return chunk(b"iTXt", body)
	return chunk(b"tEXt", keyword + b"\x00" + entry.text.encode("latin-1", errors="replace"))


def _adam7_scanlines(arr: np.ndarray) -> bytes:
	out = bytearray()
	for x0, y0, dx, dy in ADAM7_PASSES:
		sub = arr[y0::dy, x0::dx]
		if sub.shape[0] == 0 or sub.shape[1] == 0:
			continue
		rows = sub.reshape(sub.shape[0], -1)
		filtered = np.zeros((rows.shape[0], rows.shape[1] + 1), dtype=np.uint8)
		filtered[:, 1:] = rows  # filter type 0 (None) per scanline
		out += filtered.tobytes()
	return bytes(out)


def _sequential_scanlines(arr: np.ndarray) -> bytes:
	rows = arr.reshape(arr.shape[0], -1)
	filtered = np.zeros((rows.shape[0], rows.shape[1] + 1), dtype=np.uint8)
	filtered[:, 1:] = rows
	return filtered.tobytes()


def write_png(buf: RawImageBuffer, compression_level: int, interlace: bool, entries: Iterable[TextEntry] = ()) -> bytes:
	"""8-bit PNG with optional Adam7 interlacing; text chunks go before the image data."""
	ihdr = struct.pack(
		">IIBBBBB",
		buf.width,
		buf.height,
		8,
		COLOR_TYPES[buf.channels],
		0,
		0,
		1 if interlace else 0,
	)
	arr = buf.as_array()
	raw = _adam7_scanlines(arr) if interlace else _sequential_scanlines(arr)
	parts = [PNG_SIGNATURE, chunk(b"IHDR", ihdr)]
	parts.extend(text_chunk(e) for e in entries)
	parts.append(chunk(b"IDAT", zlib.compress(raw, compression_level)))
	parts.append(chunk(b"IEND", b""))
	return b"".join(parts)


def read_chunks(data: bytes) -> List[Tuple[bytes, bytes]]:
	if not data.startswith(PNG_SIGNATURE):
		raise ValueError("Not a PNG stream")
	pos = len(PNG_SIGNATURE)
	out: List[Tuple[bytes, bytes]] = []
	while pos + 8 <= len(data):
		(length,) = struct.unpack(">I", data[pos:pos + 4])
		kind = data[pos + 4:pos + 8]
		out.append((kind, data[pos + 8:pos + 8 + length]))
		pos += 12 + length
		if kind == b"IEND":
			break
	return out
