"""
Run the travel sync service with uvicorn.

Example:
  python -m apps.travel
"""
import uvicorn
import os


def main() -> None:
    reload = os.getenv("TRAVEL_RELOAD", "false").lower() == "true"
    host = os.getenv("TRAVEL_HOST", "0.0.0.0")
    port = int(os.getenv("TRAVEL_PORT", "8000"))
    uvicorn.run(
        "apps.travel.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
