"""
Uncompressed Windows bitmap, written and read by hand.

Layout: 14-byte BITMAPFILEHEADER + 40-byte BITMAPINFOHEADER, pixel data at offset 54,
rows stored bottom-up in BGR(A) order, each row padded to a multiple of 4 bytes.
"""
from __future__ import annotations

import struct

import numpy as np

from converter_api.services.errors import DecodeError, InvalidInputError
from converter_api.services.image_models import RawImageBuffer
from converter_api.services.image_utils import widen_gray


FILE_HEADER_SIZE = 14
INFO_HEADER_SIZE = 40
PIXEL_DATA_OFFSET = FILE_HEADER_SIZE + INFO_HEADER_SIZE
BI_RGB = 0


def row_size(width: int, channels: int) -> int:
	return ((width * channels + 3) // 4) * 4


def bmp_file_size(width: int, height: int, channels: int) -> int:
	return PIXEL_DATA_OFFSET + row_size(width, channels) * height


def build_headers(width: int, height: int, channels: int) -> bytes:
	image_size = row_size(width, channels) * height
	file_header = struct.pack("<2sIHHI", b"BM", PIXEL_DATA_OFFSET + image_size, 0, 0, PIXEL_DATA_OFFSET)
	info_header = struct.pack(
		"<IiiHHIIiiII",
		INFO_HEADER_SIZE,
		width,
		height,  # positive height: bottom-up rows
		1,
		channels * 8,
		BI_RGB,
		image_size,
		0,
		0,
		0,
		0,
	)
	return file_header + info_header


def encode_bmp(buf: RawImageBuffer) -> bytes:
	if buf.bit_depth != 8:
		raise InvalidInputError(f"BMP writer takes 8-bit samples, got {buf.bit_depth}")
	# 8/16-bit BI_RGB bitmaps need a palette or bit masks; widen to 24/32-bit instead
	src = widen_gray(buf)
	channels = src.channels
	arr = src.as_array()
	order = [2, 1, 0, 3][:channels]
	pixels = arr[::-1, :, order].reshape(src.height, src.width * channels)

	stride = row_size(src.width, channels)
	rows = np.zeros((src.height, stride), dtype=np.uint8)
	rows[:, :src.width * channels] = pixels
	return build_headers(src.width, src.height, channels) + rows.tobytes()


def decode_bmp(data: bytes) -> RawImageBuffer:
	"""Read back a 24/32-bit BI_RGB bitmap into top-down RGB(A), dropping row padding."""
	if len(data) < PIXEL_DATA_OFFSET or data[:2] != b"BM":
		raise DecodeError("Not a BMP file")
	_, _, _, _, offset = struct.unpack("<2sIHHI", data[:FILE_HEADER_SIZE])
	(_, width, height, _, bpp, compression, _, _, _, _, _) = struct.unpack(
		"<IiiHHIIiiII", data[FILE_HEADER_SIZE:PIXEL_DATA_OFFSET]
	)
	if compression != BI_RGB or bpp not in (24, 32):
		raise DecodeError(f"Unsupported BMP layout: bpp={bpp} compression={compression}")
	channels = bpp // 8
	top_down = height < 0
	height = abs(height)
	stride = row_size(width, channels)
	if len(data) < offset + stride * height:
		raise DecodeError("BMP pixel data is truncated")

	rows = np.frombuffer(data, dtype=np.uint8, count=stride * height, offset=offset).reshape(height, stride)
	arr = rows[:, :width * channels].reshape(height, width, channels)
	if not top_down:
		arr = arr[::-1]
	order = [2, 1, 0, 3][:channels]
	return RawImageBuffer.from_array(arr[:, :, order])
