from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, HTTPException

from ...infrastructure.llm.exceptions import ValidationError
from ...services.gateway_service import get_gateway


router = APIRouter()


@router.get("/health")
async def health() -> Dict[str, Any]:
    return get_gateway().health()


@router.get("/backends")
async def list_backends() -> Dict[str, Any]:
    gateway = get_gateway()
    return {
        "strategy": gateway.primary.config.strategy,
        "backends": gateway.primary.backend_info(),
    }


@router.get("/stats")
async def stats() -> Dict[str, Any]:
    return get_gateway().stats()


@router.post("/backends/{name}/circuit")
async def set_circuit(name: str, state: Literal["open", "closed"]) -> Dict[str, Any]:
    """手动打开 / 关闭某个后端的熔断器。"""
    primary = get_gateway().primary
    try:
        if state == "open":
            primary.open_circuit(name)
        else:
            primary.close_circuit(name)
    except ValidationError:
        raise HTTPException(status_code=404, detail=f"backend not found: {name}")
    return primary.health.snapshot(name).to_dict()


@router.post("/stats/reset")
async def reset_stats(backend: Optional[str] = None) -> Dict[str, Any]:
    gateway = get_gateway()
    try:
        gateway.reset_stats(backend)
    except ValidationError:
        raise HTTPException(status_code=404, detail=f"backend not found: {backend}")
    return gateway.stats()
