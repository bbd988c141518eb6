import os

import numpy as np
import piexif
import pytest
from PIL import Image, features

from converter_api.services.conversion import ConversionOptions, ConversionOrchestrator
from converter_api.services.errors import ErrorCode
from converter_api.services.image_models import MetadataKind
from converter_api.services.metadata import EXIF_HEADER, JPEG_APP1, XMP_HEADER, read_jpeg_segments
from converter_api.services.settings import ConverterSettings, get_settings

needs_jpeg = pytest.mark.skipif(not features.check("jpg"), reason="Pillow built without JPEG")
needs_tiff = pytest.mark.skipif(not features.check("libtiff"), reason="Pillow built without libtiff")

XMP = b"<x:xmpmeta/>"
STAMP = 1_000_000_000


def gps_exif():
	return piexif.dump({
		"0th": {piexif.ImageIFD.Make: b"Cam"},
		"GPS": {piexif.GPSIFD.GPSLatitudeRef: b"N", piexif.GPSIFD.GPSLatitude: ((1, 1), (2, 1), (3, 1))},
	})


@pytest.fixture
def orchestrator(logger):
	return ConversionOrchestrator(logger=logger)


def opts(**kw):
	return ConversionOptions.from_settings(ConverterSettings(), **kw)


def test_options_from_settings_and_overrides():
	settings = ConverterSettings(jpeg_quality=70, preserve_gps=False)
	o = ConversionOptions.from_settings(settings, quality=None, overwrite=True)
	assert o.quality == 70
	assert o.overwrite is True
	assert o.preserve_gps is False
	assert o.output_format is None


def test_settings_read_environment(monkeypatch):
	monkeypatch.setenv("HEIC_JPEG_QUALITY", "42")
	monkeypatch.setenv("HEIC_PRESERVE_GPS", "false")
	s = ConverterSettings()
	assert s.jpeg_quality == 42
	assert s.preserve_gps is False


def test_png_conversion(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake = make_heif(width=6, height=4)
	fake_codec(fake)
	dst = tmp_path / "out" / "nested" / "photo.png"
	res = orchestrator.convert(heic_source, dst, opts())

	assert res.ok, res.message
	assert res.code == ErrorCode.SUCCESS
	assert res.output_format == "png"
	with Image.open(dst) as img:
		assert img.size == (6, 4)
		assert (np.asarray(img) == fake._pixels).all()


def test_timestamps_are_copied(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif())
	os.utime(heic_source, (STAMP, STAMP))
	dst = tmp_path / "stamped.bmp"
	assert orchestrator.convert(heic_source, dst, opts()).ok
	assert dst.stat().st_mtime_ns == STAMP * 10**9
	assert dst.stat().st_atime_ns == STAMP * 10**9


def test_timestamps_can_be_skipped(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif())
	os.utime(heic_source, (STAMP, STAMP))
	dst = tmp_path / "fresh.bmp"
	assert orchestrator.convert(heic_source, dst, opts(preserve_timestamps=False)).ok
	assert dst.stat().st_mtime_ns != STAMP * 10**9


@pytest.mark.parametrize("suffix", ["png", "bmp"])
def test_overwrite_runs_are_identical(tmp_path, heic_source, fake_codec, make_heif, orchestrator, suffix):
	fake_codec(make_heif(width=9, height=9))
	dst = tmp_path / f"twice.{suffix}"
	assert orchestrator.convert(heic_source, dst, opts(overwrite=True)).ok
	first = dst.read_bytes()
	assert orchestrator.convert(heic_source, dst, opts(overwrite=True)).ok
	assert dst.read_bytes() == first


def test_existing_destination_needs_overwrite(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	calls = fake_codec(make_heif())
	dst = tmp_path / "taken.png"
	dst.write_bytes(b"keep me")
	res = orchestrator.convert(heic_source, dst, opts())
	assert res.code == ErrorCode.WRITE_PERMISSION
	assert dst.read_bytes() == b"keep me"
	assert calls == []


def test_decode_failure_writes_nothing(tmp_path, heic_source, fake_codec, orchestrator):
	fake_codec(ValueError("Invalid input: corrupt hvcC"))
	dst = tmp_path / "never.png"
	res = orchestrator.convert(heic_source, dst, opts())
	assert res.code == ErrorCode.DECODING_FAILED
	assert "corrupt hvcC" in res.message
	assert not dst.exists()


def test_empty_source_writes_nothing(tmp_path, orchestrator):
	src = tmp_path / "zero.heic"
	src.write_bytes(b"")
	dst = tmp_path / "zero.png"
	res = orchestrator.convert(src, dst, opts())
	assert res.code == ErrorCode.DECODING_FAILED
	assert not dst.exists()


@pytest.mark.parametrize(
	"name,expected",
	[("missing.heic", ErrorCode.FILE_NOT_FOUND), ("photo.gif", ErrorCode.UNSUPPORTED_FORMAT)],
)
def test_input_validation_codes(tmp_path, orchestrator, fake_codec, make_heif, name, expected):
	calls = fake_codec(make_heif())
	if name.endswith(".gif"):
		(tmp_path / name).write_bytes(b"GIF89a")
	res = orchestrator.convert(tmp_path / name, tmp_path / "out.png", opts())
	assert res.code == expected
	assert calls == []


def test_directory_input_is_invalid(tmp_path, orchestrator):
	res = orchestrator.convert(tmp_path, tmp_path / "out.png", opts())
	assert res.code == ErrorCode.INVALID_ARGUMENTS


def test_unsupported_output_format(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif())
	res = orchestrator.convert(heic_source, tmp_path / "out.gif", opts())
	assert res.code == ErrorCode.UNSUPPORTED_FORMAT
	assert not (tmp_path / "out.gif").exists()


def test_scale_out_of_range(tmp_path, heic_source, orchestrator):
	res = orchestrator.convert(heic_source, tmp_path / "out.png", opts(scale_factor=20.0))
	assert res.code == ErrorCode.INVALID_ARGUMENTS


def test_format_option_wins_over_extension(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif())
	dst = tmp_path / "odd.img"
	res = orchestrator.convert(heic_source, dst, opts(output_format="BMP"))
	assert res.ok
	assert dst.read_bytes()[:2] == b"BM"


def test_default_destination_is_next_to_source(heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif())
	res = orchestrator.convert(heic_source, None, opts(output_format="png"))
	assert res.ok
	assert res.destination == str(heic_source.with_suffix(".png"))


def test_default_destination_uses_configured_format(heic_source, fake_codec, make_heif, orchestrator, monkeypatch):
	monkeypatch.setenv("HEIC_DEFAULT_OUTPUT_FORMAT", "bmp")
	get_settings.cache_clear()
	fake_codec(make_heif())
	res = orchestrator.convert(heic_source, None, opts())
	assert res.ok, res.message
	assert res.destination == str(heic_source.with_suffix(".bmp"))
	assert heic_source.with_suffix(".bmp").read_bytes()[:2] == b"BM"


def test_unexpected_error_maps_to_unknown(tmp_path, heic_source, fake_codec, make_heif, orchestrator, monkeypatch):
	fake_codec(make_heif())

	def explode(*a, **kw):
		raise RuntimeError("boom")

	monkeypatch.setattr(orchestrator.encoder, "encode", explode)
	res = orchestrator.convert(heic_source, tmp_path / "x.png", opts())
	assert res.code == ErrorCode.UNKNOWN
	assert "boom" in res.message


def test_alpha_source_to_bmp_keeps_alpha(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif(width=3, height=3, channels=4))
	dst = tmp_path / "alpha.bmp"
	assert orchestrator.convert(heic_source, dst, opts()).ok
	assert dst.read_bytes()[28] == 32


@needs_jpeg
def test_alpha_source_to_jpeg_is_flattened(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif(width=3, height=3, channels=4))
	dst = tmp_path / "flat.jpg"
	assert orchestrator.convert(heic_source, dst, opts()).ok
	with Image.open(dst) as img:
		assert img.mode == "RGB"


@needs_jpeg
def test_jpeg_keeps_exif_and_xmp(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	blob = gps_exif()
	fake_codec(make_heif(info={"exif": blob, "xmp": XMP}))
	dst = tmp_path / "meta.jpg"
	res = orchestrator.convert(heic_source, dst, opts())
	assert res.ok
	assert res.embedded == (MetadataKind.EXIF, MetadataKind.XMP)
	segments = read_jpeg_segments(dst.read_bytes())
	assert segments[0] == (JPEG_APP1, blob)
	assert segments[1] == (JPEG_APP1, XMP_HEADER + XMP)


@needs_jpeg
def test_gps_off_drops_exif(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif(info={"exif": gps_exif(), "xmp": XMP}))
	dst = tmp_path / "nogps.jpg"
	res = orchestrator.convert(heic_source, dst, opts(preserve_gps=False))
	assert res.ok
	assert res.embedded == (MetadataKind.XMP,)
	payloads = [p for m, p in read_jpeg_segments(dst.read_bytes()) if m == JPEG_APP1]
	assert not any(p.startswith(EXIF_HEADER) for p in payloads)
	assert any("GPS" in w for w in res.warnings)


@needs_tiff
@pytest.mark.parametrize("level", [2, 5, 8])
def test_camera_exif_to_tiff_succeeds(tmp_path, heic_source, fake_codec, make_heif, orchestrator, level):
	exif = piexif.dump({
		"0th": {piexif.ImageIFD.Make: b"Cam"},
		"Exif": {piexif.ExifIFD.DateTimeOriginal: b"2024:01:02 03:04:05"},
		"GPS": {piexif.GPSIFD.GPSLatitudeRef: b"N", piexif.GPSIFD.GPSLatitude: ((1, 1), (2, 1), (3, 1))},
	})
	fake_codec(make_heif(info={"exif": exif}))
	dst = tmp_path / "camera.tiff"
	res = orchestrator.convert(heic_source, dst, opts(compression_level=level))
	assert res.code == ErrorCode.SUCCESS, res.message
	assert res.embedded in ((MetadataKind.EXIF,), ())
	if not res.embedded:
		assert any("metadata not embedded" in w for w in res.warnings)
	with Image.open(dst) as img:
		assert img.size == (8, 6)


@needs_jpeg
def test_no_metadata_flag(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif(info={"exif": gps_exif(), "xmp": XMP}))
	dst = tmp_path / "bare.jpg"
	res = orchestrator.convert(heic_source, dst, opts(keep_metadata=False))
	assert res.ok
	assert res.embedded == ()
	assert JPEG_APP1 not in [m for m, _ in read_jpeg_segments(dst.read_bytes())]


def test_metadata_skipped_for_avc_containers(tmp_path, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif(info={"xmp": XMP}))
	src = tmp_path / "clip.avci"
	src.write_bytes(b"\x00\x00\x00\x10ftypavci\x00\x00\x00\x00")
	res = orchestrator.convert(src, tmp_path / "clip.png", opts())
	assert res.ok
	assert res.embedded == ()


def test_result_serializes(tmp_path, heic_source, fake_codec, make_heif, orchestrator):
	fake_codec(make_heif(info={"xmp": XMP}))
	d = orchestrator.convert(heic_source, tmp_path / "r.png", opts()).to_dict()
	assert d["code"] == 0
	assert d["code_name"] == "SUCCESS"
	assert d["embedded"] == ["xmp"]


def test_real_heic_to_png(tmp_path, real_heic, orchestrator):
	src = real_heic(width=20, height=10)
	dst = tmp_path / "real.png"
	res = orchestrator.convert(src, dst, opts())
	assert res.ok, res.message
	with Image.open(dst) as img:
		assert img.size == (20, 10)
	assert res.embedded == (MetadataKind.EXIF,)
