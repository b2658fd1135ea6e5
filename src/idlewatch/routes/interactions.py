from typing import Optional
from litestar import post, Request
from litestar.status_codes import HTTP_200_OK
from idlewatch.lifecycle.service import InteractionService
from idlewatch.schemas.requests import (
    ActionResponse,
    ResolveInteractionRequest,
    WarnInteractionRequest,
)


@post("/interactions/{interaction_id:str}/resolve", status_code=HTTP_200_OK)
async def resolve_interaction(
    request: Request,
    interaction_service: InteractionService,
    interaction_id: str,
    data: Optional[ResolveInteractionRequest] = None,
) -> ActionResponse:
    """Manually resolve an interaction from RUNNING or WAITING."""
    request.logger.info(f"Manual resolve requested for interaction {interaction_id}")
    await interaction_service.resolve_interaction(
        interaction_id, data.resolution if data else None
    )
    return ActionResponse(success=True)


@post("/interactions/{interaction_id:str}/warn", status_code=HTTP_200_OK)
async def warn_interaction(
    request: Request,
    interaction_service: InteractionService,
    interaction_id: str,
    data: Optional[WarnInteractionRequest] = None,
) -> ActionResponse:
    """Send the idle warning for a running interaction now."""
    request.logger.info(f"Manual warning requested for interaction {interaction_id}")
    warned = await interaction_service.warn_before_closing(
        interaction_id, data.message if data else None
    )
    return ActionResponse(success=warned)
