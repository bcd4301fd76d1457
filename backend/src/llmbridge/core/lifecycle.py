import logging

from fastapi import FastAPI

from ..services.gateway_service import close_gateway, get_gateway

logger = logging.getLogger(__name__)


def register_lifecycle(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:  # noqa: F811
        # 启动时构建网关，配置错误尽早暴露
        gateway = get_gateway()
        logger.info(f"backends: {gateway.primary.backends}")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:  # noqa: F811
        # 关闭 HTTP 连接池
        await close_gateway()
