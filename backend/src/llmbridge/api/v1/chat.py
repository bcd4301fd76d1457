import json
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ...infrastructure.llm.exceptions import BridgeError, ValidationError
from ...infrastructure.llm.router import Router
from ...services.gateway_service import get_gateway


router = APIRouter()

# 路由覆盖：通过请求头指定后端 / 策略 / 超时
BACKEND_HEADER = "x-llmbridge-backend"
STRATEGY_HEADER = "x-llmbridge-strategy"
TIMEOUT_HEADER = "x-llmbridge-timeout"


def _openai_frame(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def _anthropic_frame(event: Dict[str, Any]) -> str:
    return f"event: {event.get('type', 'message')}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"


FRAMING: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "openai": _openai_frame,
    "anthropic": _anthropic_frame,
}
STREAM_END: Dict[str, Optional[str]] = {
    "openai": "data: [DONE]\n\n",
    "anthropic": None,
}


async def _read_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body is not valid JSON", field="body")


def _call_options(request: Request) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    if request.headers.get(BACKEND_HEADER):
        options["backend"] = request.headers[BACKEND_HEADER]
    if request.headers.get(STRATEGY_HEADER):
        options["strategy"] = request.headers[STRATEGY_HEADER]
    if request.headers.get(TIMEOUT_HEADER):
        value = request.headers[TIMEOUT_HEADER]
        try:
            options["timeout"] = float(value)
        except ValueError:
            raise ValidationError(f"Header {TIMEOUT_HEADER} must be a number", field=TIMEOUT_HEADER, value=value)
    return options


def _error_response(facade: Router, error: BridgeError) -> JSONResponse:
    status, body = facade.render_error(error)
    return JSONResponse(body, status_code=status)


async def _sse(facade: Router, events: AsyncIterator[Dict[str, Any]], first: Dict[str, Any]) -> AsyncIterator[str]:
    name = facade.frontend.name
    frame = FRAMING[name]
    async with aclosing(events):
        try:
            yield frame(first)
            async for event in events:
                yield frame(event)
        except BridgeError as e:
            # 响应头已发送，只能以错误事件结束流
            _, body = facade.render_error(e)
            yield frame({"type": "error", **body})
            return
    if STREAM_END[name]:
        yield STREAM_END[name]


async def _handle(frontend: str, request: Request):
    facade = get_gateway().router(frontend)
    try:
        raw = await _read_body(request)
        options = _call_options(request)
        if isinstance(raw, dict) and facade.frontend.is_stream_request(raw):
            events = facade.chat_stream(raw, **options)
            # 首个事件之前的失败仍以普通 HTTP 错误返回
            first = await anext(events)
            return StreamingResponse(_sse(facade, events, first), media_type="text/event-stream")
        return JSONResponse(await facade.chat(raw, **options))
    except BridgeError as e:
        return _error_response(facade, e)


@router.post("/chat/completions")
async def openai_chat_completions(request: Request):
    return await _handle("openai", request)


@router.post("/messages")
async def anthropic_messages(request: Request):
    return await _handle("anthropic", request)
