from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import database
from cart import router as cart_router
from config import configure_logging, get_settings
from errors import ApiError, InvalidArgument
from gateway import build_gateway
from orders import router as order_router
from payments import router as payment_router

settings = get_settings()
configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.gateway = build_gateway(settings)
    if database.db is not None:
        database.ensure_indexes(database.db)
    logger.info("Storefront API started", gateway=getattr(app.state.gateway, "name", None))
    yield


app = FastAPI(title="Skincare Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Errors
@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    error = InvalidArgument("; ".join(problems) or None)
    return JSONResponse(status_code=error.status_code, content=error.payload())


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"message": "Database error"})


app.include_router(cart_router)
app.include_router(order_router)
app.include_router(payment_router)


# Health
@app.get("/")
def read_root():
    return {"message": "Skincare Storefront Backend running"}


@app.get("/test")
def test_database():
    db = database.db
    try:
        collections = db.list_collection_names() if db is not None else []
        return {"backend": "ok", "db": "ok" if db is not None else "not_configured", "collections": collections}
    except PyMongoError as e:
        return {"backend": "ok", "db": f"error: {str(e)[:80]}"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
