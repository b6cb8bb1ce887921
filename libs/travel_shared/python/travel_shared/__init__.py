from .request_id import RequestIDMiddleware, bind_request_id, get_request_id
from .health import add_standard_health
from .logging import setup_json_logging
from .lifecycle import bind_engine_lifecycle, register_startup, register_shutdown

__all__ = [
    "RequestIDMiddleware",
    "get_request_id",
    "bind_request_id",
    "add_standard_health",
    "setup_json_logging",
    "bind_engine_lifecycle",
    "register_startup",
    "register_shutdown",
]
