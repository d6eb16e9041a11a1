"""
Main FastAPI Application
========================

This is the main FastAPI application entry point of the netbackup worker. It
builds the job scheduler from settings, exposes it through the REST API and
shuts it down with the process.

Features:
- FastAPI app with middleware and CORS configuration
- Scheduler creation, autostart and shutdown in the application lifespan
- Scheduler router registration
- Error handling and logging configuration
- Health checks
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from netbackup import __version__
from netbackup.job_scheduler import JobScheduler, SchedulerState

from netbackup_api.config import Settings, settings as default_settings
from netbackup_api.routers import scheduler_router
from netbackup_api.services import build_scheduler

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
	"""Configure root logging once for the process."""
	handlers = [logging.StreamHandler()]
	if settings.log_file:
		handlers.append(logging.FileHandler(settings.log_file))

	logging.basicConfig(
		level=getattr(logging, settings.log_level.upper()),
		format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
		handlers=handlers,
		force=True
	)
	logging.getLogger("paramiko").setLevel(logging.WARNING)


def create_app(settings: Optional[Settings] = None, scheduler: Optional[JobScheduler] = None) -> FastAPI:
	"""
	Create the application.

	Args:
		settings: Application settings, defaults to the environment.
		scheduler: A prepared scheduler; built from settings when omitted.
	"""
	settings = settings or default_settings

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		"""Application lifecycle management - startup and shutdown events."""
		logger.info("Starting up netbackup worker...")

		try:
			app.state.scheduler = scheduler or build_scheduler(settings)
		except Exception as e:
			logger.error(f"Scheduler initialization failed: {e}")
			raise

		if settings.scheduler_autostart:
			result = app.state.scheduler.start()
			logger.info(f"Job scheduler: {result.message}")

		logger.info("Netbackup worker startup completed")

		yield

		logger.info("Shutting down netbackup worker...")
		try:
			app.state.scheduler.shutdown()
			app.state.scheduler.reporter.close()
			logger.info("Job scheduler shutdown completed")
		except Exception as e:
			logger.error(f"Error during shutdown: {e}")

	app = FastAPI(
		title="Network Device Backup Worker",
		description="Configuration backup worker driving SSH and Telnet device sessions "
					"on schedules, task runs and ad-hoc requests.",
		version=__version__,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
		openapi_url="/api/openapi.json",
		lifespan=lifespan
	)
	app.state.scheduler = None

	app.add_middleware(
		CORSMiddleware,
		allow_origins=settings.cors_origins.split(","),
		allow_credentials=True,
		allow_methods=["*"],
		allow_headers=["*"],
	)

	@app.exception_handler(RequestValidationError)
	async def validation_exception_handler(request: Request, exc: RequestValidationError):
		"""Handle request validation errors."""
		return JSONResponse(
			status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
			content={
				"message": "Validation error",
				"details": exc.errors(),
				"success": False
			}
		)

	@app.exception_handler(HTTPException)
	async def http_exception_handler(request: Request, exc: HTTPException):
		"""Handle HTTP exceptions."""
		return JSONResponse(
			status_code=exc.status_code,
			content={
				"message": exc.detail,
				"success": False
			}
		)

	@app.exception_handler(Exception)
	async def general_exception_handler(request: Request, exc: Exception):
		"""Handle general exceptions."""
		logger.error(f"Unhandled exception: {exc}", exc_info=True)
		return JSONResponse(
			status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
			content={
				"message": "Internal server error",
				"success": False
			}
		)

	@app.get("/", tags=["Root"])
	async def root():
		"""Root endpoint with worker information."""
		return {
			"message": "Network Device Backup Worker API",
			"version": __version__,
			"status": "running",
			"timestamp": datetime.now(timezone.utc).isoformat(),
			"docs": "/api/docs",
			"health": "/api/health"
		}

	@app.get("/api/health", tags=["Health"])
	async def health_check(request: Request):
		"""Health check endpoint."""
		health_status = {
			"status": "healthy",
			"timestamp": datetime.now(timezone.utc).isoformat(),
			"components": {},
			"version": __version__
		}

		scheduler_instance = request.app.state.scheduler
		if scheduler_instance is None:
			health_status["components"]["job_scheduler"] = {
				"status": "unhealthy",
				"message": "Job scheduler is not initialized"
			}
			health_status["status"] = "unhealthy"
		elif scheduler_instance.state == SchedulerState.RUNNING:
			health_status["components"]["job_scheduler"] = {
				"status": "healthy",
				"message": "Job scheduler is running"
			}
		else:
			health_status["components"]["job_scheduler"] = {
				"status": "warning",
				"message": f"Job scheduler is {scheduler_instance.state.value}"
			}

		return health_status

	app.include_router(scheduler_router.router, prefix="/api/scheduler", tags=["Scheduler"])

	return app


def main():
	"""Run the API server with uvicorn."""
	import uvicorn

	configure_logging(default_settings)
	uvicorn.run(
		create_app(default_settings),
		host=default_settings.api_host,
		port=default_settings.api_port,
		log_level=default_settings.log_level.lower(),
		access_log=True
	)


if __name__ == "__main__":
	main()
