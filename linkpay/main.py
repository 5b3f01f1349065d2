import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from linkpay import config
from linkpay.database import Base, engine
from linkpay.errors import LinkError
from linkpay.routes import ERROR_STATUS, router
from linkpay.withdrawal_gateway import close_withdrawal_gateway
import linkpay.models  # noqa: F401  (registers tables on Base)

logging.basicConfig(
    level=config.log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Shutdown
    logger.info("Shutting down, closing relayer client")
    close_withdrawal_gateway()


app = FastAPI(title="Shielded Payment Link Service", lifespan=lifespan)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(LinkError)
async def link_error_handler(request: Request, exc: LinkError):
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.kind.value)
    content = {"detail": exc.message, "kind": exc.kind.value, "retryable": exc.retryable}
    if exc.link_id:
        content["linkId"] = exc.link_id
    reason = getattr(exc, "reason", None)
    if reason is not None:
        content["reason"] = reason.value
    return JSONResponse(status_code=status_code, content=content)
