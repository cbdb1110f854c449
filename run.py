import logging
import os

import uvicorn

logger = logging.getLogger("run")


def run_migrations() -> bool:
    """Run Alembic migrations."""
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config("alembic.ini")
    logger.info("[STARTUP] Running database migrations...")
    command.upgrade(alembic_cfg, "head")
    logger.info("[STARTUP] Migrations complete!")
    return True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    if os.getenv("RUN_MIGRATIONS") == "true":
        run_migrations()

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", 8000))

    # Disable reload in production
    reload = os.getenv("ENV") == "development"

    logger.info(f"[STARTUP] Server binding to host={host} port={port}")
    uvicorn.run(
        "app.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        workers=1,
    )
