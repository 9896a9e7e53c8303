"""
Embedded Relay - Backend

Mounts the sigrelay routes under /signal on an existing FastAPI app,
next to the app's own endpoints.
Run with: python main.py
"""

import os
import sys
from contextlib import asynccontextmanager

# Add the parent package to path for development
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "..", "python"))

from fastapi import FastAPI

from sigrelay import Settings, SignalingServer, configure_logging

settings = Settings(max_room_size=4)
configure_logging(settings)
relay = SignalingServer(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The host app owns the lifespan, so it starts the relay's background tasks
    await relay.start()
    yield
    await relay.stop()


app = FastAPI(title="Embedded Relay", lifespan=lifespan)
relay.mount(app, prefix="/signal")


@app.get("/")
async def index():
    return {"websocket": f"/signal{settings.path}", "auth": "/signal/auth"}


if __name__ == "__main__":
    import uvicorn
    bind_host = os.environ.get("BIND_HOST", "127.0.0.1")
    bind_port = int(os.environ.get("BIND_PORT", "8080"))
    uvicorn.run(app, host=bind_host, port=bind_port)
