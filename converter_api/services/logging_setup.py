from __future__ import annotations

import logging
import sys
from typing import Optional

LOGGER_NAME = "heic_converter"
SUCCESS = 25

logging.addLevelName(SUCCESS, "SUCCESS")


def get_logger(name: Optional[str] = None) -> logging.Logger:
	if not name:
		return logging.getLogger(LOGGER_NAME)
	return logging.getLogger(f"{LOGGER_NAME}.{name}")


def log_success(logger: logging.Logger, msg: str, *args) -> None:
	logger.log(SUCCESS, msg, *args)


def configure_logging(verbose: bool = False) -> logging.Logger:
	"""Install a single stderr handler on the package logger (idempotent)."""
	root = logging.getLogger(LOGGER_NAME)
	root.setLevel(logging.DEBUG if verbose else logging.INFO)
	for h in list(root.handlers):
		if getattr(h, "_heic_handler", False):
			root.removeHandler(h)
	handler = logging.StreamHandler(sys.stderr)
	handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
	handler._heic_handler = True  # type: ignore[attr-defined]
	root.addHandler(handler)
	root.propagate = False
	return root
