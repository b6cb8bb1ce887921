import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """
    Request id of the current HTTP request. Background work that runs
    outside a request gets a fresh id on first use so its log lines can
    still be correlated.
    """
    rid = _rid_ctx.get()
    if not rid:
        rid = uuid.uuid4().hex
        _rid_ctx.set(rid)
    return rid


def bind_request_id(rid: str) -> None:
    _rid_ctx.set(rid or uuid.uuid4().hex)


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = (request.headers.get(self.header_name) or "").strip()[:64] or uuid.uuid4().hex
        _rid_ctx.set(rid)
        response: Response = await call_next(request)
        response.headers.setdefault(self.header_name, rid)
        return response
