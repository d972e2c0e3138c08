# Sync_Deps.py
# Description: FastAPI dependency that hands endpoints the SyncEngine owned by the running application.
#
# Imports
#
# 3rd-party Libraries
from fastapi import HTTPException, Request, status
from loguru import logger
#
# Local Imports
from tad_Client_API.app.core.Sync.engine import SyncEngine
#
#######################################################################################################################
#
# Functions:


def get_sync_engine(request: Request) -> SyncEngine:
    """
    Returns the engine built by the application lifespan.

    Tests swap it out with ``app.dependency_overrides[get_sync_engine]``.
    """
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        logger.error("Sync engine requested before the application finished starting")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync engine is not initialized")
    return engine

#
# End of Sync_Deps.py
#######################################################################################################################
