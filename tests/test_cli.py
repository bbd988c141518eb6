import os

import pytest

from converter_api.services.errors import ErrorCode
from heic_pipeline.scripts.convert_heic import main


def test_list_formats(capsys):
	assert main(["--list-formats"]) == 0
	out = capsys.readouterr().out
	assert "heic" in out and "bmp" in out


def test_version(capsys):
	with pytest.raises(SystemExit) as info:
		main(["--version"])
	assert info.value.code == 0
	assert "1.1.0" in capsys.readouterr().out


def test_missing_input_is_invalid():
	assert main([]) == ErrorCode.INVALID_ARGUMENTS


def test_directory_input_is_invalid(tmp_path):
	assert main([str(tmp_path)]) == ErrorCode.INVALID_ARGUMENTS


def test_scale_out_of_range(heic_source):
	assert main([str(heic_source), "-s", "12"]) == ErrorCode.INVALID_ARGUMENTS


def test_convert_with_default_output(heic_source, fake_codec, make_heif):
	fake_codec(make_heif())
	assert main([str(heic_source), "-f", "bmp"]) == 0
	assert heic_source.with_suffix(".bmp").read_bytes()[:2] == b"BM"


def test_exit_code_is_error_code(heic_source, fake_codec):
	fake_codec(ValueError("truncated"))
	assert main([str(heic_source), "-f", "png"]) == ErrorCode.DECODING_FAILED
	assert not heic_source.with_suffix(".png").exists()


def test_existing_output_needs_flag(heic_source, fake_codec, make_heif, tmp_path):
	fake_codec(make_heif())
	out = tmp_path / "o.png"
	out.write_bytes(b"x")
	assert main([str(heic_source), str(out)]) == ErrorCode.WRITE_PERMISSION
	assert main([str(heic_source), str(out), "-o", "--no-timestamps"]) == 0
	assert out.read_bytes() != b"x"


def test_timestamps_flag(heic_source, fake_codec, make_heif, tmp_path):
	fake_codec(make_heif())
	os.utime(heic_source, (2_000_000, 2_000_000))
	out = tmp_path / "t.png"
	assert main([str(heic_source), str(out)]) == 0
	assert int(out.stat().st_mtime) == 2_000_000


def test_info(heic_source, fake_codec, make_heif, capsys):
	fake_codec(make_heif(width=40, height=10))
	assert main([str(heic_source), "--info"]) == 0
	out = capsys.readouterr().out
	assert "40x10" in out
	assert "Panorama:    yes" in out
