from __future__ import annotations

import struct
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import piexif  # relies on requirements in pyproject

from converter_api.services.errors import MetadataError
from converter_api.services.image_models import MetadataBundle, MetadataKind


EXIF_HEADER = b"Exif\x00\x00"
XMP_HEADER = b"http://ns.adobe.com/xap/1.0/\x00"
PHOTOSHOP_HEADER = b"Photoshop 3.0\x00"
IPTC_RESOURCE_ID = 0x0404

JPEG_SOI = b"\xff\xd8"
JPEG_APP1 = 0xE1
JPEG_APP13 = 0xED
JPEG_SOS = 0xDA
JPEG_EOI = 0xD9
# segment length field is 16-bit and counts itself
MAX_SEGMENT_PAYLOAD = 0xFFFF - 2


def _bytes_to_str(v: Any) -> Optional[str]:
	if v is None:
		return None
	if isinstance(v, bytes):
		return v.decode("utf-8", errors="ignore").rstrip("\x00").strip() or None
	if isinstance(v, str):
		return v
	return str(v)


def _to_int_safe(v: Any) -> Optional[int]:
	if v is None:
		return None
	if isinstance(v, int):
		return v
	if isinstance(v, (list, tuple)) and v:
		try:
			return int(v[0])
		except (TypeError, ValueError):
			return None
	try:
		return int(v)
	except (TypeError, ValueError):
		return None


# ---------------------------------------------------------------- extraction


def normalize_exif(blob: bytes) -> bytes:
	"""
	Return the TIFF-structured EXIF payload.
	Containers and Pillow hand EXIF over with or without the APP1 'Exif\\0\\0' prefix;
	the bundle always stores it without.
	"""
	data = bytes(blob or b"")
	if data.startswith(EXIF_HEADER):
		data = data[len(EXIF_HEADER):]
	return data


def extract_bundle(info: Mapping[str, Any]) -> MetadataBundle:
	"""
	Build a MetadataBundle from a decoded container's info mapping
	(pillow-heif exposes 'exif', 'xmp' and a 'metadata' list of typed blocks).
	Blocks are copied verbatim; absent blocks are skipped.
	"""
	blocks: Dict[MetadataKind, bytes] = {}

	exif = info.get("exif")
	if isinstance(exif, (bytes, bytearray)) and exif:
		blocks[MetadataKind.EXIF] = normalize_exif(bytes(exif))

	xmp = info.get("xmp")
	if isinstance(xmp, str):
		xmp = xmp.encode("utf-8")
	if isinstance(xmp, (bytes, bytearray)) and xmp:
		blocks[MetadataKind.XMP] = bytes(xmp)

	for entry in info.get("metadata") or []:
		if not isinstance(entry, Mapping):
			continue
		kind = str(entry.get("type", "")).lower()
		content_type = str(entry.get("content_type", "")).lower()
		data = entry.get("data")
		if not isinstance(data, (bytes, bytearray)) or not data:
			continue
		if kind == "iptc" and MetadataKind.IPTC not in blocks:
			blocks[MetadataKind.IPTC] = bytes(data)
		elif kind == "mime" and "xmp" in content_type and MetadataKind.XMP not in blocks:
			blocks[MetadataKind.XMP] = bytes(data)
		elif kind == "exif" and MetadataKind.EXIF not in blocks:
			blocks[MetadataKind.EXIF] = normalize_exif(bytes(data))

	return MetadataBundle(blocks)


# ---------------------------------------------------------------- inspection


def _load_exif(blob: bytes) -> Dict[str, Any]:
	try:
		loaded = piexif.load(normalize_exif(blob))
	except Exception as exc:  # piexif raises bare ValueError/struct.error/etc.
		raise MetadataError(f"Unreadable EXIF block: {exc}") from exc
	if not isinstance(loaded, dict):
		raise MetadataError("Unreadable EXIF block")
	return loaded


def exif_has_gps(blob: bytes) -> bool:
	return bool(_load_exif(blob).get("GPS"))


def summarize_exif(blob: bytes) -> Dict[str, Any]:
	"""A few diagnostic fields; never used to rewrite the block."""
	ex = _load_exif(blob)
	zeroth = ex.get("0th", {}) or {}
	exif = ex.get("Exif", {}) or {}
	dt = exif.get(piexif.ExifIFD.DateTimeOriginal) or zeroth.get(piexif.ImageIFD.DateTime)
	return {
		"size": len(blob),
		"orientation": _to_int_safe(zeroth.get(piexif.ImageIFD.Orientation)),
		"make": _bytes_to_str(zeroth.get(piexif.ImageIFD.Make)),
		"model": _bytes_to_str(zeroth.get(piexif.ImageIFD.Model)),
		"datetime_original": _bytes_to_str(dt),
		"has_gps": bool(ex.get("GPS")),
		"tag_count": sum(len(v) for k, v in ex.items() if isinstance(v, dict)),
	}


def describe_exif(blob: bytes) -> str:
	"""Text for the PNG annotation chunk."""
	parts = [f"EXIF data present ({len(blob)} bytes)"]
	try:
		s = summarize_exif(blob)
	except MetadataError:
		return parts[0]
	for key in ("make", "model", "datetime_original"):
		if s.get(key):
			parts.append(f"{key}={s[key]}")
	if s.get("has_gps"):
		parts.append("gps=yes")
	return "; ".join(parts)


# ---------------------------------------------------------------- policy


def select_blocks(
	bundle: MetadataBundle,
	keep_metadata: bool = True,
	preserve_exif: bool = True,
	preserve_xmp: bool = True,
	preserve_iptc: bool = True,
	preserve_gps: bool = True,
) -> Tuple[MetadataBundle, List[str]]:
	"""
	Filter whole blocks by the preservation flags. Returns (bundle, notes).
	GPS lives inside EXIF; with preserve_gps off, an EXIF block that carries a GPS IFD
	(or cannot be inspected) is dropped as a whole.
	"""
	notes: List[str] = []
	if not keep_metadata:
		if bundle:
			notes.append("metadata disabled; dropping " + ", ".join(k.value for k in bundle))
		return MetadataBundle(), notes

	keep = set()
	if preserve_exif and MetadataKind.EXIF in bundle:
		exif = bundle[MetadataKind.EXIF]
		if preserve_gps:
			keep.add(MetadataKind.EXIF)
		else:
			try:
				has_gps = exif_has_gps(exif)
			except MetadataError as exc:
				has_gps = True
				notes.append(f"cannot inspect EXIF for GPS ({exc}); dropping EXIF")
			if has_gps:
				notes.append("EXIF contains GPS data and GPS preservation is off; dropping EXIF")
			else:
				keep.add(MetadataKind.EXIF)
	if preserve_xmp and MetadataKind.XMP in bundle:
		keep.add(MetadataKind.XMP)
	if preserve_iptc and MetadataKind.IPTC in bundle:
		keep.add(MetadataKind.IPTC)
	return bundle.filtered(keep), notes


# ---------------------------------------------------------------- JPEG markers


def jpeg_segment(marker: int, payload: bytes) -> bytes:
	if len(payload) > MAX_SEGMENT_PAYLOAD:
		raise MetadataError(
			f"Segment payload of {len(payload)} bytes exceeds the {MAX_SEGMENT_PAYLOAD}-byte JPEG limit"
		)
	return bytes((0xFF, marker)) + struct.pack(">H", len(payload) + 2) + payload


def build_exif_segment(exif: bytes) -> bytes:
	return jpeg_segment(JPEG_APP1, EXIF_HEADER + exif)


def build_xmp_segment(xmp: bytes) -> bytes:
	return jpeg_segment(JPEG_APP1, XMP_HEADER + xmp)


def build_iptc_segment(iptc: bytes) -> bytes:
	# Photoshop image resource block: '8BIM', id, empty pascal name (padded), size, data (padded)
	resource = b"8BIM" + struct.pack(">H", IPTC_RESOURCE_ID) + b"\x00\x00"
	resource += struct.pack(">I", len(iptc)) + iptc
	if len(iptc) % 2:
		resource += b"\x00"
	return jpeg_segment(JPEG_APP13, PHOTOSHOP_HEADER + resource)


def insert_jpeg_segments(jpeg: bytes, segments: Iterable[bytes]) -> bytes:
	"""Place segments directly after SOI, ahead of every marker the codec wrote."""
	if not jpeg.startswith(JPEG_SOI):
		raise MetadataError("Not a JPEG stream (missing SOI)")
	return JPEG_SOI + b"".join(segments) + jpeg[len(JPEG_SOI):]


def read_jpeg_segments(jpeg: bytes) -> List[Tuple[int, bytes]]:
	"""(marker, payload) pairs from SOI up to and including SOS."""
	if not jpeg.startswith(JPEG_SOI):
		raise MetadataError("Not a JPEG stream (missing SOI)")
	out: List[Tuple[int, bytes]] = []
	pos = 2
	while pos + 4 <= len(jpeg):
		if jpeg[pos] != 0xFF:
			raise MetadataError(f"Expected marker at offset {pos}")
		marker = jpeg[pos + 1]
		if marker == 0xFF:
			pos += 1
			continue
		if marker == JPEG_EOI:
			break
		(length,) = struct.unpack(">H", jpeg[pos + 2:pos + 4])
		out.append((marker, jpeg[pos + 4:pos + 2 + length]))
		pos += 2 + length
		if marker == JPEG_SOS:
			break
	return out


def embed_jpeg_metadata(jpeg: bytes, bundle: MetadataBundle) -> Tuple[bytes, List[MetadataKind], List[str]]:
	"""
	Insert EXIF, XMP and IPTC segments (in that order) after SOI.
	A block that cannot be packed is skipped with a warning; the pixels are kept.
	"""
	segments: List[bytes] = []
	embedded: List[MetadataKind] = []
	warnings: List[str] = []
	builders = (
		(MetadataKind.EXIF, build_exif_segment),
		(MetadataKind.XMP, build_xmp_segment),
		(MetadataKind.IPTC, build_iptc_segment),
	)
	for kind, build in builders:
		block = bundle.block(kind)
		if not block:
			continue
		try:
			segments.append(build(block))
			embedded.append(kind)
		except MetadataError as exc:
			warnings.append(f"{kind.value.upper()} not embedded: {exc}")
	if not segments:
		return jpeg, embedded, warnings
	return insert_jpeg_segments(jpeg, segments), embedded, warnings
