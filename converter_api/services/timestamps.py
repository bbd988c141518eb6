from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from converter_api.services.errors import TimestampError
from converter_api.services.image_models import TimestampTriple


def capture_timestamps(path: Union[str, Path]) -> TimestampTriple:
	try:
		st = os.stat(path)
	except OSError as exc:
		raise TimestampError(f"Cannot read timestamps of {path}: {exc}") from exc
	# birth time where the platform records it, else inode change time
	created = getattr(st, "st_birthtime_ns", None)
	if created is None:
		birth = getattr(st, "st_birthtime", None)
		created = int(birth * 1e9) if birth is not None else st.st_ctime_ns
	return TimestampTriple(created_ns=created, modified_ns=st.st_mtime_ns, accessed_ns=st.st_atime_ns)


def apply_timestamps(path: Union[str, Path], stamps: TimestampTriple) -> None:
	"""Overwrite access and modification times; creation time cannot be set portably."""
	try:
		os.utime(path, ns=(stamps.accessed_ns, stamps.modified_ns))
	except OSError as exc:
		raise TimestampError(f"Cannot set timestamps on {path}: {exc}") from exc
