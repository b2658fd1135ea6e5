"""
Interaction transitions.

resolve_interaction() and warn_before_closing() each perform the store write
and all of its effects (outbound message, unread marker, live event), so the
lifecycle invariants hold no matter who triggers the transition: the idle
engine or a person using the dashboard.
"""

from datetime import datetime
from typing import Optional
from litestar.types.protocols import Logger
import asyncio

from idlewatch.database.store import ConversationStore
from idlewatch.errors import AlreadyResolved, AlreadyWarned, InvalidState, NotFound, StoreUnavailable
from idlewatch.integrations.events import EventSink
from idlewatch.integrations.notifier import Notifier
from idlewatch.lifecycle.clock import Clock
from idlewatch.lifecycle.composer import MessageComposer
from idlewatch.schemas.interaction import (
    Chat,
    ChatUpdateEvent,
    ChatView,
    InteractionStatus,
    Message,
    MessageView,
    TransitionGuard,
)


CHAT_UPDATE_EVENT = "messageChatUpdate"


class InteractionService:
    def __init__(
        self,
        store: ConversationStore,
        notifier: Notifier,
        events: EventSink,
        composer: MessageComposer,
        clock: Clock,
        logger: Logger,
        delivery_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.events = events
        self.composer = composer
        self.clock = clock
        self.logger = logger
        self.delivery_timeout = delivery_timeout

    async def resolve_interaction(
        self,
        interaction_id: str,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
        guard: Optional[TransitionGuard] = None,
    ) -> bool:
        """
        Move an interaction to RESOLVED.

        Raises NotFound for unknown ids and AlreadyResolved when the interaction
        is (or concurrently became) resolved. Returns False without side effects
        when a guard is given and no longer holds at write time.
        """
        now = now or self.clock.now()

        interaction = await self.store.get_interaction(interaction_id)
        if interaction is None:
            raise NotFound("Interaction", interaction_id)
        if interaction.status == InteractionStatus.RESOLVED:
            raise AlreadyResolved(interaction_id)

        audit = await self.store.transition_to_resolved(
            interaction_id, now, reason or self.composer.resolution(), guard
        )
        if audit is None:
            current = await self.store.get_interaction(interaction_id)
            if current is None:
                raise NotFound("Interaction", interaction_id)
            if current.status == InteractionStatus.RESOLVED:
                raise AlreadyResolved(interaction_id)
            self.logger.info(
                f"Interaction {interaction_id} is no longer idle, leaving it {current.status.value}"
            )
            return False

        self.logger.info(f"Resolved interaction {interaction_id}: {audit.text}")
        await self._publish_chat_update(interaction.chat_id, audit)
        return True

    async def warn_before_closing(
        self,
        interaction_id: str,
        message: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
        guard: Optional[TransitionGuard] = None,
    ) -> bool:
        """
        Flag a running interaction as warned and tell the user it will be closed.

        The interaction stays RUNNING; warned_at starts the closure clock. The
        warning counts as issued once delivery was attempted, whatever the outcome.
        """
        now = now or self.clock.now()

        interaction = await self.store.get_interaction(interaction_id)
        if interaction is None:
            raise NotFound("Interaction", interaction_id)
        if interaction.status != InteractionStatus.RUNNING:
            raise InvalidState(interaction_id, interaction.status.value)
        if interaction.warned_at is not None:
            raise AlreadyWarned(interaction_id)

        chat = await self.store.get_chat(interaction.chat_id)
        if chat is None:
            raise NotFound("Chat", interaction.chat_id)

        # Claim the warning (and the unread marker) before sending so racing sweeps cannot both deliver it
        if not await self.store.transition_to_warned(interaction_id, now, guard):
            current = await self.store.get_interaction(interaction_id)
            if current is None:
                raise NotFound("Interaction", interaction_id)
            if current.status != InteractionStatus.RUNNING:
                raise InvalidState(interaction_id, current.status.value)
            if current.warned_at is not None:
                raise AlreadyWarned(interaction_id)
            self.logger.info(f"Interaction {interaction_id} is no longer idle, not warning")
            return False

        text = message or self.composer.warning()
        outbound = await self.deliver(chat, interaction_id, text, now)

        await self._publish_chat_update(chat.id, outbound)
        return True

    async def deliver(
        self, chat: Chat, interaction_id: Optional[str], text: str, now: datetime
    ) -> Message:
        """Record an outbound assistant message and attempt delivery through the notifier."""
        message = await self.store.create_message(
            chat.id, interaction_id, "assistant", text, now
        )

        if not chat.whatsapp_phone:
            self.logger.info(f"Chat {chat.id} has no delivery address, message kept internal")
            return message

        try:
            result = await asyncio.wait_for(
                self.notifier.send(chat.whatsapp_phone, text), self.delivery_timeout
            )
            success, error = result.success, result.error
            provider_message_id = result.provider_message_id
        except asyncio.TimeoutError:
            success, error, provider_message_id = False, "timeout", None
        except Exception as e:
            success, error, provider_message_id = False, str(e), None

        if success:
            message.sent_to_channel = True
            message.sent_at = self.clock.now()
            message.provider_message_id = provider_message_id
            await self.store.mark_message_sent(
                message.id, message.sent_at, provider_message_id
            )
        else:
            self.logger.error(
                f"Failed to deliver message {message.id} to chat {chat.id}: {error}"
            )
            message.failed_at = now
            message.fail_reason = error or "unknown error"
            await self.store.mark_message_failed(message.id, now, message.fail_reason)

        return message

    async def _publish_chat_update(self, chat_id: str, latest_message: Message) -> None:
        try:
            chat = await self.store.get_chat(chat_id)
            latest_interaction = await self.store.latest_interaction_with_messages(chat_id)
        except StoreUnavailable as e:
            self.logger.error(f"Skipping {CHAT_UPDATE_EVENT} for chat {chat_id}: {e}")
            return

        if chat is None:
            return

        event = ChatUpdateEvent(
            chat=ChatView.model_validate(chat),
            latest_interaction=latest_interaction,
            latest_message=MessageView.model_validate(latest_message),
        )
        self.events.publish(chat.workspace_id, CHAT_UPDATE_EVENT, event)
