from __future__ import annotations

from datetime import datetime
from pathlib import Path
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from converter_api.services.conversion_job import get_orchestrator, run_conversion
from converter_api.services.heic_decoder import HeicDecoder
from converter_api.services.settings import mime_type_for_extension, normalize_extension
from converter_api.services.status_store import read_status, write_status


router = APIRouter(prefix="/convert", tags=["convert"])


def _slugify(text: str) -> str:
	return "".join(ch if (ch.isalnum() or ch in ("-", "_")) else "-" for ch in text).strip("-_").lower()


@router.get("/formats", summary="List accepted input containers and available output formats")
def formats():
	return {
		"input": HeicDecoder.get_supported_formats(),
		"output": get_orchestrator().encoder.get_supported_formats(),
	}


@router.post("/upload", summary="Upload a HEIC/HEIF image and start background conversion")
async def upload(
	background_tasks: BackgroundTasks,
	file: UploadFile = File(...),
	output_format: str = Form("jpg"),
	quality: Optional[int] = Form(None),
	compression_level: Optional[int] = Form(None),
	progressive: bool = Form(False),
	interlace: bool = Form(False),
	lossless: bool = Form(False),
	keep_metadata: Optional[bool] = Form(None),
	preserve_exif: Optional[bool] = Form(None),
	preserve_xmp: Optional[bool] = Form(None),
	preserve_iptc: Optional[bool] = Form(None),
	preserve_gps: Optional[bool] = Form(None),
):
	filename = Path(file.filename or "image.heic").name
	if not HeicDecoder.is_format_supported(Path(filename).suffix):
		raise HTTPException(status_code=415, detail=f"Unsupported input format: {filename}")
	fmt = normalize_extension(output_format)
	if not get_orchestrator().encoder.validate_format(fmt):
		raise HTTPException(status_code=400, detail=f"Unsupported output format: {output_format}")
	data = await file.read()

	# Human-readable job_id: "<filename_stem>_<ddmmyyyy>_<suffix>"
	stem = _slugify(Path(filename).stem) or "job"
	date_str = datetime.now().strftime("%d%m%Y")
	job_id = f"{stem}_{date_str}_{uuid.uuid4().hex[:6]}"
	write_status(job_id, {"job_id": job_id, "status": "queued", "step": "Queued"})
	overrides = {
		"output_format": fmt,
		"quality": quality,
		"compression_level": compression_level,
		"progressive": progressive,
		"interlace": interlace,
		"lossless": lossless,
		"keep_metadata": keep_metadata,
		"preserve_exif": preserve_exif,
		"preserve_xmp": preserve_xmp,
		"preserve_iptc": preserve_iptc,
		"preserve_gps": preserve_gps,
	}
	background_tasks.add_task(run_conversion, job_id, filename, data, overrides)
	return {
		"job_id": job_id,
		"status": "queued",
		"filename": filename,
		"output_format": fmt,
		"size_bytes": len(data),
		"status_endpoint": f"/convert/status/{job_id}",
		"result_endpoint": f"/convert/result/{job_id}",
	}


@router.get("/status/{job_id}", summary="Get conversion status")
def status(job_id: str):
	return read_status(job_id)


@router.get("/result/{job_id}", summary="Download the converted image")
def result(job_id: str):
	data = read_status(job_id)
	if data.get("status") != "completed":
		return {"job_id": job_id, "status": data.get("status"), "message": "not completed yet"}
	path = Path(data.get("destination", ""))
	if not path.is_file():
		raise HTTPException(status_code=404, detail="Converted file is missing")
	return FileResponse(path, media_type=mime_type_for_extension(path.suffix), filename=path.name)
