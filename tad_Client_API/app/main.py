# main.py
# Description: FastAPI application exposing the client sync engine's control API.
#
# Imports
import logging
#
# 3rd-party Libraries
import sys
from contextlib import asynccontextmanager
from loguru import logger
from fastapi import FastAPI
#
# Local Imports
from tad_Client_API.app.core.config import AppConfig
from tad_Client_API.app.core.Sync.engine import SyncEngine
#
# Sync Endpoint
from tad_Client_API.app.api.v1.endpoints.sync import router as sync_router
#
########################################################################################################################
#
# Functions:


# --- Loguru Configuration with Intercept Handler ---

# Define a handler class to intercept standard logging messages
class InterceptHandler(logging.Handler):
    def emit(self, record):
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def configure_logging(log_level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        colorize=True,
    )

    # httpx logs every request at INFO through stdlib logging
    loggers_to_intercept = ["uvicorn", "uvicorn.error", "uvicorn.access", "httpx"]
    for logger_name in loggers_to_intercept:
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.propagate = False


config = AppConfig.from_toml()
configure_logging(config.log_level)

for problem in config.validate():
    logger.warning(f"Config problem: {problem}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = SyncEngine.from_config(config)
    app.state.sync_engine = engine
    logger.info("App Startup: sync engine created")
    await engine.start()
    yield
    logger.info("App Shutdown: closing sync engine")
    await engine.close()
    app.state.sync_engine = None


app = FastAPI(
    title="Transcript Analytics Sync API",
    version="0.1.0",
    description="Control API for the transcript dashboard's client sync & reconciliation engine",
    lifespan=lifespan,
)


@app.get("/")
async def root():
    return {"message": "Transcript sync engine is running"}


# Router for sync control endpoints
app.include_router(sync_router, prefix="/api/v1/sync", tags=["sync"])

#
# End of main.py
########################################################################################################################
