"""FastAPI application entry point."""
import contextvars
import logging
import traceback
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from folio.api.routes import accounts, commands, db, positions, sync, transactions
from folio.core.config import get_settings
from folio.core.error_codes import PortfolioError, PortfolioErrorCode, get_error_message
from folio.core.logging import get_logger, setup_logging
from folio.db.paths import get_db_path

# Thread/async-safe request ID propagation via contextvars
_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar('request_id', default='')


class RequestIDFilter(logging.Filter):
    """Logging filter that injects request_id from contextvars into log records."""
    def filter(self, record):
        record.request_id = _request_id_ctx.get('')
        return True


setup_logging(get_settings().log_level)
# Handler-level so records propagated from child loggers get request_id too
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIDFilter())
logger = get_logger(__name__)

try:
    get_settings().validate_llm_provider()
except ValueError as e:
    logger.error(str(e))
    raise


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request id to every request, response and log record."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = _request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            _request_id_ctx.reset(token)


app = FastAPI(
    title="Folio Portfolio API",
    version="1.0.0"
)


def _request_id(request: Request) -> str:
    return getattr(request.state, 'request_id', None) or str(uuid.uuid4())[:8]


def error_response(request: Request, status_code: int, error: dict) -> JSONResponse:
    """Wrap an error payload in the standard envelope."""
    request_id = _request_id(request)
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ERROR",
            "error": {**error, "request_id": request_id},
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )


@app.exception_handler(PortfolioError)
async def portfolio_error_handler(request: Request, exc: PortfolioError):
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        level, "%s %s -> %s: %s", request.method, request.url.path, exc.error_code.value, exc.message,
        extra={"error_class": exc.error_code.value},
    )
    return error_response(request, exc.status_code, exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Body/query validation failures use VALIDATION_ERROR with a 400."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    first = errors[0]["msg"] if errors else get_error_message(PortfolioErrorCode.VALIDATION_ERROR)["message"]
    error = PortfolioError(
        PortfolioErrorCode.VALIDATION_ERROR,
        f"Invalid request: {first}",
        details={"errors": errors},
    )
    return error_response(request, error.status_code, error.to_dict())


# Global exception handler to ensure all errors return JSON, never HTML
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions and return JSON error response."""
    request_id = _request_id(request)
    logger.error(
        "Unhandled exception: %s | req=%s | %s %s\n%s",
        str(exc)[:200],
        request_id,
        request.method,
        str(request.url.path),
        traceback.format_exc()[-500:],
        extra={"error_class": type(exc).__name__},
    )
    error = PortfolioError(PortfolioErrorCode.INTERNAL_ERROR)
    return error_response(request, 500, error.to_dict())


app.add_middleware(RequestIDMiddleware)

# Include routers
app.include_router(commands.router, prefix="/api/v1/command", tags=["command"])
app.include_router(positions.router, prefix="/api/v1/portfolio/positions", tags=["positions"])
app.include_router(accounts.router, prefix="/api/v1/portfolio/accounts", tags=["accounts"])
app.include_router(transactions.router, prefix="/api/v1/portfolio/transactions", tags=["transactions"])
app.include_router(sync.router, prefix="/api/v1/portfolio", tags=["sync"])
app.include_router(db.router, prefix="/api/v1/db", tags=["db"])


@app.get("/health")
async def health():
    """Liveness plus the document path this process writes to."""
    return {"status": "ok", "db_path": get_db_path()}
