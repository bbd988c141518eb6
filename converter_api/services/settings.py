from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


PROGRAM_NAME = "heic_converter"
VERSION = "1.1.0"

SUPPORTED_INPUT_FORMATS = ("heic", "heif", "hif", "avci", "avcs", "avif")

_FORMAT_ALIASES: Dict[str, str] = {
	"jpg": "jpeg",
	"jpeg": "jpeg",
	"png": "png",
	"bmp": "bmp",
	"tif": "tiff",
	"tiff": "tiff",
	"webp": "webp",
}

_MIME_TYPES: Dict[str, str] = {
	"jpg": "image/jpeg",
	"jpeg": "image/jpeg",
	"png": "image/png",
	"bmp": "image/bmp",
	"tif": "image/tiff",
	"tiff": "image/tiff",
	"webp": "image/webp",
	"heic": "image/heic",
	"heif": "image/heif",
	"hif": "image/heif",
	"avif": "image/avif",
}

class ConverterSettings(BaseSettings):
	model_config = SettingsConfigDict(env_prefix="HEIC_", extra="ignore")

	default_output_format: str = Field(default="jpg")
	jpeg_quality: int = Field(default=85)
	png_compression: int = Field(default=6)
	scale_factor: float = Field(default=1.0, ge=0.1, le=10.0)
	overwrite: bool = Field(default=False)
	verbose: bool = Field(default=False)

	keep_metadata: bool = Field(default=True)
	preserve_timestamps: bool = Field(default=True)
	preserve_exif: bool = Field(default=True)
	preserve_xmp: bool = Field(default=True)
	preserve_iptc: bool = Field(default=True)
	preserve_gps: bool = Field(default=True)

	# 250 MP upper bound keeps an RGBA decode under ~1 GB
	max_pixels: int = Field(default=250_000_000, gt=0)

	jobs_dir: Path = Field(default=Path("jobs"))
	upload_dir: Path = Field(default=Path("converter_api/input"))
	output_dir: Path = Field(default=Path("converter_api/output"))


@lru_cache(maxsize=1)
def get_settings() -> ConverterSettings:
	return ConverterSettings()


def normalize_extension(ext: str) -> str:
	"""'.JPG' / 'JPG' / 'jpg' -> 'jpg'."""
	return ext.strip().lstrip(".").lower()


def canonical_format(name: str) -> Optional[str]:
	"""Map a format name or extension onto the encoder's canonical key, or None."""
	return _FORMAT_ALIASES.get(normalize_extension(name))


def mime_type_for_extension(ext: str) -> str:
	return _MIME_TYPES.get(normalize_extension(ext), "application/octet-stream")


def default_output_path(input_path: Path, output_format: str = "jpg") -> Path:
	if input_path.is_dir():
		return input_path
	return input_path.with_suffix("." + normalize_extension(output_format))
