import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .db import init_db
from .settings import settings
from .routers import auth
from .routers import chat
from .routers import profile
from .routers import quiz
from .routers import upload

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
	init_db()
	logger.info("LeedsBot API ready (model configured: %s)", bool(settings.openai_api_key))
	yield


app = FastAPI(title="LeedsBot API", lifespan=_lifespan)
app.include_router(auth.router)
app.include_router(chat.router)
app.include_router(quiz.router)
app.include_router(upload.router)
app.include_router(profile.router)


def _first_error_message(exc: RequestValidationError) -> str:
	errors = exc.errors()
	if not errors:
		return "Invalid input"
	err = errors[0]
	cause = (err.get("ctx") or {}).get("error")
	if isinstance(cause, Exception):
		return str(cause)
	loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
	msg = err.get("msg") or "Invalid input"
	return f"{loc}: {msg}" if loc else msg


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
	return JSONResponse(status_code=400, content={"detail": _first_error_message(exc)})


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception):
	logger.exception("unhandled error on %s %s", request.method, request.url.path)
	return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/info")
def root():
	return {"status": "ok", "model_configured": bool(settings.openai_api_key)}
