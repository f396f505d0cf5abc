from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import engine as db_engine, init_db
from domain import UpstreamUnavailable
from game_engine import GameEngine, build_engine
from routes import admin_router, game_router
from schemas import HealthResponse
from settings import env_str


def _cors_origins() -> list[str]:
    raw = env_str("CORS_ORIGINS")
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "null",
    ]


def create_app(game_engine: Optional[GameEngine] = None) -> FastAPI:
    """Build the API. Without an injected engine the lifespan creates tables and one from env."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.engine is None:
            init_db(db_engine)
            app.state.engine = build_engine()
        await app.state.engine.start()
        try:
            yield
        finally:
            await app.state.engine.stop()

    app = FastAPI(
        title="PlayerQI API",
        description="Adaptive guess-the-player questioning engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = game_engine

    # CORS settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(game_router)
    app.include_router(admin_router)

    @app.middleware("http")
    async def utf8_charset_middleware(request: Request, call_next):
        response = await call_next(request)
        ct = response.headers.get("content-type", "")
        if "application/json" in ct and "charset" not in ct:
            response.headers["content-type"] = ct + "; charset=utf-8"
        return response

    @app.exception_handler(RequestValidationError)
    async def bad_request_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "bad_request"})

    @app.exception_handler(UpstreamUnavailable)
    async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable):
        print(f"[api] upstream unavailable on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"error": "upstream_unavailable"})

    @app.exception_handler(Exception)
    async def server_error_handler(request: Request, exc: Exception):
        print(f"[api] unhandled error on {request.url.path}: {type(exc).__name__}: {str(exc)[:200]}")
        return JSONResponse(status_code=500, content={"error": "server_error"})

    @app.get("/")
    async def root():
        return {
            "message": "PlayerQI API - guess the player",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/api/health", response_model=HealthResponse)
    async def api_health(request: Request):
        engine = request.app.state.engine
        flags = engine.collaborators() if engine is not None else {
            "llmConfigured": False,
            "serperConfigured": False,
            "searchProvider": "none",
            "gapFillEnabled": False,
            "catalogLoaded": False,
            "matrixLoaded": False,
        }
        return {"status": "healthy", **flags}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
