import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .core.logging import setup_logging
from .core.lifecycle import register_lifecycle
from .api.v1.router import api_router
from .core.settings import get_settings, settings_diagnostics


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    app = FastAPI(title="llmbridge API", version=__version__, debug=settings.debug)
    # CORS（最小允许，本地开发）
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router)
    register_lifecycle(app)
    # 启动日志诊断（简要）
    logging.getLogger(__name__).info(f"settings: {settings_diagnostics(settings)}")
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("llmbridge.asgi:app", host="0.0.0.0", port=8000, reload=True)
