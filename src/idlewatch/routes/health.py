from litestar import get
from litestar.datastructures import State


@get(path="/health")
async def health(state: State) -> dict[str, str]:
    async with state.db_pool.connection() as db:
        await db.execute("SELECT 1")
    return {"status": "healthy"}
