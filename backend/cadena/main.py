"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from cadena.api import analysis
from cadena.config import API_HOST, API_PORT

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: drop in-memory sessions on startup and shutdown."""
    analysis.purge_stale_sessions()
    yield
    analysis._sessions.clear()
    logger.info("Shutdown: in-memory sessions cleared")


app = FastAPI(
    title="Cadena de Propiedad Vehicular",
    description="Ownership-chain and circulation-certificate compliance analysis",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(analysis.router, prefix="/api/analysis", tags=["Analysis"])


@app.get("/api/health")
async def health():
    return {"status": "operational", "platform": "Cadena de Propiedad Vehicular"}


def run():
    """Serve the API with uvicorn on CADENA_API_HOST:CADENA_API_PORT."""
    logger.info(f"Starting API on {API_HOST}:{API_PORT}")
    uvicorn.run("cadena.main:app", host=API_HOST, port=API_PORT, log_level="info")


if __name__ == "__main__":
    run()
