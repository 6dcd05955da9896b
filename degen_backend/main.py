"""
API server entry point.
"""

import uvicorn

from degen_backend.api.main import create_app
from degen_backend.core.config import settings


app = create_app()


def run() -> None:
    """Console script entry point."""
    uvicorn.run(
        "degen_backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    run()
