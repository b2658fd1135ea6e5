from typing import Any, Protocol, Union
from litestar.channels import ChannelsPlugin
from litestar.types.protocols import Logger
from pydantic import BaseModel


class EventSink(Protocol):
    def publish(
        self, scope_id: str, event_name: str, payload: Union[BaseModel, dict]
    ) -> None: ...


class ChannelsEventSink:
    """Fan lifecycle events out to websocket subscribers, one channel per workspace."""

    def __init__(self, channels: ChannelsPlugin, logger: Logger) -> None:
        self.channels = channels
        self.logger = logger

    def publish(
        self, scope_id: str, event_name: str, payload: Union[BaseModel, dict]
    ) -> None:
        data: Any = (
            payload.model_dump(mode="json", by_alias=True)
            if isinstance(payload, BaseModel)
            else payload
        )
        try:
            self.channels.publish({"event": event_name, "data": data}, channels=[scope_id])
        except Exception as e:
            # Observers are best effort; a dead channel must not fail a transition
            self.logger.error(f"Failed to publish {event_name} to {scope_id}: {e}")
