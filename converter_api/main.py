from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from converter_api.routers.convert_images import router as convert_router
from converter_api.services.logging_setup import configure_logging
from converter_api.services.settings import PROGRAM_NAME, VERSION, get_settings


def create_app() -> FastAPI:
	configure_logging(get_settings().verbose)
	app = FastAPI(title="HEIC Converter API", version=VERSION)

	# CORS (adjust origins in production)
	app.add_middleware(
		CORSMiddleware,
		allow_origins=["*"],
		allow_credentials=False,
		allow_methods=["*"],
		allow_headers=["*"],
	)

	# Routers
	app.include_router(convert_router)

	@app.get("/", summary="Service banner")
	def root():
		return {"name": PROGRAM_NAME, "version": VERSION}

	return app


app = create_app()


if __name__ == "__main__":
	# Local dev server: uvicorn converter_api.main:app --reload
	import uvicorn

	uvicorn.run("converter_api.main:app", host="0.0.0.0", port=8000, reload=True)
