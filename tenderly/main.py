# tenderly/main.py
import logging

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import crud
from .config import get_settings
from .core.logging import setup_logging
from .database import create_tables
from .errors import TenderlyError
from .limiter import limiter
from .routers import consultations, doctor_shifts, health, payments, prescriptions
from .seed import create_initial_data

settings = get_settings()
setup_logging(settings.log_level, settings.json_logs)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
def on_startup():
    create_tables()
    create_initial_data()


@app.exception_handler(TenderlyError)
async def tenderly_error_handler(request: Request, exc: TenderlyError):
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(crud.CRUDError)
async def crud_error_handler(request: Request, exc: crud.CRUDError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "database_error", "detail": str(exc)})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(consultations.router, prefix="/api/v1")
app.include_router(prescriptions.router, prefix="/api/v1")
app.include_router(prescriptions.documents_router, prefix="/api/v1")
app.include_router(doctor_shifts.router, prefix="/api/v1")
app.include_router(payments.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("tenderly.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
