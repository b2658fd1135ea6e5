from litestar.datastructures import State
from idlewatch.lifecycle.service import InteractionService


async def get_interaction_service(state: State) -> InteractionService:
    return state.interaction_service
