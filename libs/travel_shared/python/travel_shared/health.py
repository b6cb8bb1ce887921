import os
from collections.abc import Callable

from fastapi import FastAPI


def add_standard_health(app: FastAPI, env_key: str = "ENV", db_check: Callable[[], bool] | None = None):
    @app.get("/health")
    def _health():
        out = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if db_check is not None:
            try:
                ok = bool(db_check())
            except Exception:
                ok = False
            out["db"] = "ok" if ok else "unavailable"
            if not ok:
                out["status"] = "degraded"
        return out
