from litestar import Litestar
from litestar.channels import ChannelsPlugin
from litestar.channels.backends.memory import MemoryChannelsBackend
from litestar.di import Provide
from litestar.logging import LoggingConfig

from idlewatch.dependencies import get_interaction_service
from idlewatch.errors import LifecycleError
from idlewatch.lifespan import lifespan
from idlewatch.logging_middleware import (
    CorrelationFilter,
    CorrelationFormatter,
    CorrelationMiddleware,
    correlation_id_contextvar,
)
from idlewatch.routes.errors import lifecycle_error_handler
from idlewatch.routes.health import health
from idlewatch.routes.interactions import resolve_interaction, warn_interaction


logging_config = LoggingConfig(
    root={
        "level": "INFO",
        "handlers": ["queue_listener"],
        "filters": ["correlation"]
    },
    formatters={
        "standard": {
            "()": CorrelationFormatter,
            "format": "%(asctime)s - %(correlation_id)s - %(levelname)s - %(message)s"
        }
    },
    filters={
        "correlation": {
            "()": CorrelationFilter,
            "contextvar": correlation_id_contextvar
        }
    },
    loggers={
        # Library loggers need the filter too or their lines lose the correlation ID
        "httpx": {
            "level": "INFO",
            "filters": ["correlation"],
            "propagate": True
        },
        "uvicorn": {
            "level": "INFO",
            "filters": ["correlation"],
            "propagate": True
        },
        "litestar": {
            "level": "INFO",
            "filters": ["correlation"],
            "propagate": True
        }
    },
    log_exceptions="always",
)

# Live dashboards subscribe to /events/{workspace_id}
channels = ChannelsPlugin(
    backend=MemoryChannelsBackend(),
    arbitrary_channels_allowed=True,
    create_ws_route_handlers=True,
    ws_handler_base_path="/events",
)

app = Litestar(
    route_handlers=[
        health,
        resolve_interaction,
        warn_interaction,
    ],
    dependencies={"interaction_service": Provide(get_interaction_service)},
    exception_handlers={LifecycleError: lifecycle_error_handler},
    plugins=[channels],
    lifespan=[lifespan],
    logging_config=logging_config,
    middleware=[CorrelationMiddleware(correlation_id_contextvar)],
)
