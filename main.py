"""
Review Desk - FastAPI Backend

Review and approval workflow for invoices, vouchers, notices and tasks.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health
"""
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from reviewdesk import __version__
from reviewdesk.api import review_router
from reviewdesk.core.config import get_config
from reviewdesk.services.errors import ReviewDeskError, to_http_exception
from reviewdesk.services.logging import log_error, log_request

app = FastAPI(
    title="Review Desk API",
    description="""
    Review Desk API - review and approval workflow

    ## Review sessions
    - Role-gated status transitions for invoices and vouchers
    - Sequential review queue with auto-advance and invoice/voucher fallback
    - Closure requests for notices and tasks

    ## Comment threads
    - Initial fetch, polling and realtime pushes merged without duplicates
    - Read receipts after a sustained view
    - Collaborator management
    """,
    version=__version__,
)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise

        duration_ms = (time.time() - start_time) * 1000
        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            client_id=client_id,
        )
        return response


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReviewDeskError)
async def review_desk_exception_handler(request: Request, exc: ReviewDeskError):
    """Handle all ReviewDeskErrors with structured responses."""
    http_error = to_http_exception(exc)
    if http_error.status_code >= 500:
        log_error(exc.code.value, str(exc), exc.context)
    return JSONResponse(status_code=http_error.status_code, content=exc.to_dict())


app.include_router(review_router)


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "version": __version__,
        "finance_api_url": get_config().finance_api_url,
    }
