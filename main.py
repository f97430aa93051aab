"""ASGI compatibility entrypoint for platforms that resolve `main:app`."""

from comparelabs.main import app

__all__ = ["app"]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
