"""FastAPI application setup for TTimes."""

from fastapi import FastAPI

from .api import router as api_router

app = FastAPI(title="TTimes")


@app.get("/health")
def health():
    """Liveness probe."""
    return {"message": "OK"}


# API routes
app.include_router(api_router, prefix="/api")
