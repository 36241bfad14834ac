"""Main FastAPI application entry point."""

import logging
from core.app import create_app
from core.config import get_cached_settings

settings = get_cached_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format=settings.LOG_FORMAT,
)

# Create the application instance
app = create_app()

def main():
    """CLI entry point for running the server."""
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
