import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from basecore.logging import setup_logging
from basecore.settings import get_settings
from game_api.routes import events_router, market_router, upgrades_router
from nebula_core.errors import NebulaError

setup_logging()
settings = get_settings()
logger = logging.getLogger(__name__)

# Engine error kind -> HTTP status
ERROR_STATUS = {
    "not_found": 404,
    "already_completed": 409,
    "conflict": 409,
    "insufficient_funds": 402,
    "invalid_argument": 422,
    "internal": 500,
}

app = FastAPI(
    title="Nebula Game API",
    description="Upgrade tree, events and market for the idle game",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NebulaError)
async def nebula_error_handler(request: Request, exc: NebulaError):
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"Engine failure on {request.url.path}: {exc}", extra=exc.context)
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


app.include_router(upgrades_router, prefix="/api/v1")
app.include_router(events_router, prefix="/api/v1")
app.include_router(market_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "Nebula Game API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
