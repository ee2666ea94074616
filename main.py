
import logging

import uvicorn

from app.core.config import settings


def main():
    """Main entry point to run the application."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "app.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=not settings.is_production,
    )


if __name__ == "__main__":
    main()
