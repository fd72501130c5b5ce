"""FastAPI application."""

import uvicorn
from fastapi import FastAPI

from backend.docassist.api.errors import install_error_handling
from backend.docassist.api.routes.health import router as health_router
from backend.docassist.api.routes.metrics import router as metrics_router
from backend.docassist.api.routes.v2 import agent_router
from backend.docassist.api.routes.v2 import router as v2_router
from backend.docassist.config import get_settings

app = FastAPI(title="DocAssist Knowledge API", version="0.1.0")

install_error_handling(app)

# Register routes
app.include_router(health_router, tags=["health"])
app.include_router(metrics_router, tags=["metrics"])
app.include_router(v2_router)
app.include_router(agent_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "DocAssist Knowledge API", "version": "0.1.0"}


def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
