from fastapi import APIRouter

from .chat import router as chat_router
from .backends import router as backends_router


api_router = APIRouter(prefix="/api/v1")
api_router.include_router(chat_router, tags=["chat"])
api_router.include_router(backends_router, tags=["backends"])
