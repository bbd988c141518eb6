from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ErrorCode(IntEnum):
	SUCCESS = 0
	INVALID_ARGUMENTS = 1
	UNSUPPORTED_FORMAT = 2
	FILE_NOT_FOUND = 3
	READ_PERMISSION = 4
	WRITE_PERMISSION = 5
	DECODING_FAILED = 6
	ENCODING_FAILED = 7
	MEMORY_ALLOCATION = 8
	CODEC_INITIALIZATION = 9
	BATCH_PROCESSING = 10
	METADATA_EXTRACTION = 11
	METADATA_WRITING = 12
	TIMESTAMP_COPY = 13
	UNKNOWN = 255


class ConversionError(Exception):
	"""
	Base for every failure raised by the conversion core.
	Carries a human-readable cause and the result code surfaced to callers.
	"""

	default_code = ErrorCode.UNKNOWN

	def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
		super().__init__(message)
		self.message = message
		self.code = ErrorCode(code) if code is not None else self.default_code

	def __str__(self) -> str:
		return self.message


class InputError(ConversionError):
	default_code = ErrorCode.FILE_NOT_FOUND


class UnsupportedFormatError(InputError):
	default_code = ErrorCode.UNSUPPORTED_FORMAT


class DecodeError(ConversionError):
	default_code = ErrorCode.DECODING_FAILED


class EncodeError(ConversionError):
	default_code = ErrorCode.ENCODING_FAILED


class InvalidInputError(EncodeError):
	pass


class MetadataError(ConversionError):
	default_code = ErrorCode.METADATA_WRITING


class TimestampError(ConversionError):
	default_code = ErrorCode.TIMESTAMP_COPY
