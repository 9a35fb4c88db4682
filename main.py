"""
KeyGate — Entry Point

Starts the FastAPI application that validates API keys, reports effective
rate limits, enforces monthly quotas and meters usage.

Usage:
    docker-compose up -d      # Start PostgreSQL
    pip install -e .
    python main.py            # Start the application
"""

import uvicorn

from config.settings import settings

if __name__ == "__main__":
    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
