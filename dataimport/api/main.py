"""FastAPI application entry point."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .routes import imports, plans, templates

app = FastAPI(
    title="Data Import API",
    description="API for tenant data imports, import templates and migration plans",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router, prefix="/api/imports", tags=["imports"])
app.include_router(plans.router, prefix="/api/plans", tags=["plans"])
app.include_router(templates.router, prefix="/api/templates", tags=["templates"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
