import logging
from collections.abc import Callable

from fastapi import FastAPI
from sqlalchemy.engine import Engine


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    def decorator(func: Callable) -> Callable:
        app.router.on_startup.append(func)
        return func
    return decorator


def register_shutdown(app: FastAPI) -> Callable[[Callable], Callable]:
    def decorator(func: Callable) -> Callable:
        app.router.on_shutdown.append(func)
        return func
    return decorator


def bind_engine_lifecycle(app: FastAPI, get_engine: Callable[[], Engine], logger_name: str = "travel.api") -> None:
    """
    Log the database dialect at startup and dispose the pool at shutdown.
    `get_engine` is called at hook time so a replaced module engine
    (tests, reconfiguration) is the one that gets disposed.
    """
    log = logging.getLogger(logger_name)

    @register_startup(app)
    def _log_engine():
        eng = get_engine()
        log.info("%s starting (db dialect %s)", app.title, eng.dialect.name)

    @register_shutdown(app)
    def _dispose_engine():
        get_engine().dispose()
        log.info("%s stopped; connection pool disposed", app.title)
