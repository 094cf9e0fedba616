from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from .db import close_pool
from .deps import get_orchestrator, get_pending_cache
from .errors import CheckoutError, ValidationError
from .logging_config import setup_logging
from .routes import auth, checkout
from .routes import orders as orders_router
from .settings import settings

logger = structlog.get_logger(__name__)

app = FastAPI(title="Verger Checkout Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout.router)
app.include_router(orders_router.router)
app.include_router(auth.router)


@app.exception_handler(CheckoutError)
async def _checkout_error(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _request_invalid(request: Request, exc: RequestValidationError):
    # malformed JSON / wrong types get the same 400 shape as our own checks
    errors = exc.errors()
    field = ".".join(str(p) for p in errors[0]["loc"][1:]) if errors else None
    err = ValidationError("Requête invalide", field=field or None)
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.get("/")
def root():
    return {"message": "Verger checkout API is running"}


@app.on_event("startup")
def _startup():
    setup_logging()
    logger.info("startup", paypal_environment=settings.paypal_environment)


@app.on_event("shutdown")
async def _shutdown():
    # let in-flight receipts finish before the loop goes away
    await get_orchestrator().wait_for_receipts()
    await get_pending_cache().close()
    await close_pool()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.api_host, port=settings.api_port)
