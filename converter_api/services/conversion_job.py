from __future__ import annotations
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict
from converter_api.services.conversion import ConversionOptions, ConversionOrchestrator
from converter_api.services.logging_setup import get_logger
from converter_api.services.settings import get_settings, normalize_extension
from converter_api.services.status_store import write_status


logger = get_logger("jobs")


@lru_cache(maxsize=1)
def get_orchestrator() -> ConversionOrchestrator:
	return ConversionOrchestrator(logger=get_logger("service"))


def run_conversion(job_id: str, filename: str, data: bytes, overrides: Dict[str, Any]) -> None:
	try:
		settings = get_settings()
		# 1) Save the upload to <upload_dir>/<job_id>/
		write_status(job_id, {"job_id": job_id, "status": "saving", "step": "Save Upload"})
		in_dir = Path(settings.upload_dir) / job_id
		in_dir.mkdir(parents=True, exist_ok=True)
		src = in_dir / Path(filename).name
		with src.open("wb") as f:
			f.write(data)

		# 2) Convert into <output_dir>/<job_id>/<stem>.<format>
		options = ConversionOptions.from_settings(settings, **overrides)
		fmt = normalize_extension(options.output_format or settings.default_output_format)
		options.output_format = fmt
		dst = Path(settings.output_dir) / job_id / f"{src.stem}.{fmt}"
		write_status(job_id, {
			"job_id": job_id,
			"status": "converting",
			"step": "Convert Image",
			"source": str(src),
			"output_format": fmt,
		})
		result = get_orchestrator().convert(src, dst, options)

		# 3) Complete
		status = "completed" if result.ok else "error"
		record: Dict[str, Any] = {"job_id": job_id, "status": status, "step": "Done"}
		record.update(result.to_dict())
		if not result.ok:
			record["error"] = result.message
		write_status(job_id, record)
	except Exception as e:
		logger.exception("Job %s failed", job_id)
		write_status(job_id, {"job_id": job_id, "status": "error", "error": str(e)})
