from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

import numpy as np


QUALITY_MIN = 1
QUALITY_MAX = 100
COMPRESSION_MIN = 0
COMPRESSION_MAX = 9


def clamp_quality(value: int) -> int:
	return max(QUALITY_MIN, min(QUALITY_MAX, int(value)))


def clamp_compression(value: int) -> int:
	return max(COMPRESSION_MIN, min(COMPRESSION_MAX, int(value)))


@dataclass(frozen=True)
class RawImageBuffer:
	"""
	Decoded, row-major, interleaved pixels.
	channels: 1 gray, 2 gray+alpha, 3 RGB, 4 RGBA.
	"""
	data: bytes
	width: int
	height: int
	channels: int
	bit_depth: int = 8

	@property
	def bytes_per_sample(self) -> int:
		return max(1, self.bit_depth // 8)

	@property
	def row_bytes(self) -> int:
		return self.width * self.channels * self.bytes_per_sample

	@property
	def expected_size(self) -> int:
		return self.row_bytes * self.height

	@property
	def has_alpha(self) -> bool:
		return self.channels in (2, 4)

	def as_array(self) -> np.ndarray:
		# Read-only view; the buffer is never edited in place.
		dtype = np.uint8 if self.bytes_per_sample == 1 else np.dtype(">u2")
		arr = np.frombuffer(self.data, dtype=dtype)
		return arr.reshape(self.height, self.width, self.channels)

	@classmethod
	def from_array(cls, arr: np.ndarray) -> "RawImageBuffer":
		if arr.ndim == 2:
			arr = arr[..., np.newaxis]
		if arr.ndim != 3:
			raise ValueError("Expected HxW or HxWxC array")
		h, w, c = arr.shape
		u8 = np.ascontiguousarray(arr, dtype=np.uint8)
		return cls(data=u8.tobytes(), width=int(w), height=int(h), channels=int(c), bit_depth=8)


class MetadataKind(str, Enum):
	EXIF = "exif"
	XMP = "xmp"
	IPTC = "iptc"


class MetadataBundle(Mapping[MetadataKind, bytes]):
	"""Opaque metadata blocks keyed by kind. Empty blocks are not stored."""

	def __init__(self, blocks: Optional[Mapping[MetadataKind, bytes]] = None) -> None:
		clean: Dict[MetadataKind, bytes] = {}
		for kind, block in (blocks or {}).items():
			if block:
				clean[MetadataKind(kind)] = bytes(block)
		self._blocks = MappingProxyType(clean)

	def __getitem__(self, kind: MetadataKind) -> bytes:
		return self._blocks[MetadataKind(kind)]

	def __iter__(self) -> Iterator[MetadataKind]:
		return iter(self._blocks)

	def __len__(self) -> int:
		return len(self._blocks)

	def __repr__(self) -> str:
		sizes = ", ".join(f"{k.value}={len(v)}B" for k, v in self._blocks.items())
		return f"MetadataBundle({sizes})"

	def block(self, kind: MetadataKind) -> bytes:
		return self._blocks.get(MetadataKind(kind), b"")

	def filtered(self, kinds: Iterable[MetadataKind]) -> "MetadataBundle":
		keep = {MetadataKind(k) for k in kinds}
		return MetadataBundle({k: v for k, v in self._blocks.items() if k in keep})


@dataclass(frozen=True)
class TimestampTriple:
	created_ns: int
	modified_ns: int
	accessed_ns: int


@dataclass(frozen=True)
class EncodeOptions:
	format: str
	quality: int = 85
	compression_level: int = 6
	progressive: bool = False
	interlace: bool = False
	lossless: bool = False
	metadata: MetadataBundle = field(default_factory=MetadataBundle)
	preserve_metadata: bool = True

	def __post_init__(self) -> None:
		# best-effort conversion: out-of-range values are pulled into range
		object.__setattr__(self, "quality", clamp_quality(self.quality))
		object.__setattr__(self, "compression_level", clamp_compression(self.compression_level))

	def embeddable(self) -> MetadataBundle:
		return self.metadata if self.preserve_metadata else MetadataBundle()


@dataclass(frozen=True)
class SourceInfo:
	width: int
	height: int
	has_alpha: bool
	bit_depth: int
	image_count: int = 1
	brand: Optional[str] = None

	@property
	def channels(self) -> int:
		return 4 if self.has_alpha else 3

	@property
	def is_panorama(self) -> bool:
		return self.width > self.height * 2 or self.height > self.width * 2


@dataclass(frozen=True)
class DecodedImage:
	buffer: RawImageBuffer
	metadata: MetadataBundle
	info: SourceInfo
	synthetic: bool = False


@dataclass(frozen=True)
class EncodeResult:
	path: str
	format: str
	size_bytes: int
	embedded: Tuple[MetadataKind, ...] = ()
	warnings: Tuple[str, ...] = ()
