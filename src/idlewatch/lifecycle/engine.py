from datetime import datetime
from typing import Awaitable, Callable, List, Optional
from litestar.types.protocols import Logger
from pydantic import BaseModel
import asyncio

from idlewatch.database.store import ConversationStore
from idlewatch.errors import AlreadyResolved, InvalidState, NotFound, StoreUnavailable
from idlewatch.lifecycle.composer import MessageComposer
from idlewatch.lifecycle.policy import IdlePolicy, reminder_interval
from idlewatch.lifecycle.service import InteractionService
from idlewatch.schemas.interaction import InteractionSnapshot


class TickResult(BaseModel):
    """Diagnostic counters for one sweep; not exact under partial failure."""

    warned: int = 0
    closed: int = 0
    skipped: int = 0
    failed: int = 0
    scan_failures: int = 0

    @property
    def healthy(self) -> bool:
        return self.failed == 0 and self.scan_failures == 0


class IdleCandidates(BaseModel):
    warning_needed: List[str] = []
    closure_needed: List[str] = []


class LifecycleEngine:
    """
    Drives one idle sweep at a time.

    Each candidate is an independent unit of work with its own failure boundary
    and time limit. A record that errors or hangs is logged and counted while
    the rest of the tick carries on; committed transitions are never rolled back.
    The engine owns no timer; a scheduler calls run_tick(now).
    """

    def __init__(
        self,
        store: ConversationStore,
        service: InteractionService,
        policy: IdlePolicy,
        composer: MessageComposer,
        logger: Logger,
        candidate_timeout: float = 30.0,
        notify_on_close: bool = True,
    ) -> None:
        self.store = store
        self.service = service
        self.policy = policy
        self.composer = composer
        self.logger = logger
        self.candidate_timeout = candidate_timeout
        self.notify_on_close = notify_on_close

    async def run_tick(self, now: datetime) -> TickResult:
        result = TickResult()

        running = await self._scan(self.store.find_running_candidates, "RUNNING", result)
        for snapshot in running:
            if self._is_due(
                snapshot, lambda s: self.policy.needs_warning(s, s.reminder, now), result
            ):
                await self._process(snapshot, self._warn(snapshot, now), "warn", result)

        # Rescan so closure decisions see the warnings written above
        warned = [
            s
            for s in await self._scan(self.store.find_running_candidates, "RUNNING", result)
            if s.warned_at is not None
        ]
        waiting = await self._scan(self.store.find_waiting_candidates, "WAITING", result)
        for snapshot in warned + waiting:
            if self._is_due(snapshot, lambda s: self.policy.needs_auto_close(s, now), result):
                await self._process(snapshot, self._close(snapshot, now), "close", result)

        self.logger.info(
            f"Idle sweep completed: {result.warned} warned, {result.closed} closed, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    async def find_idle(self, now: datetime) -> IdleCandidates:
        """
        Read-only preview: list the interactions that the next sweep at `now`
        would warn or close. Nothing is written and no message is sent; operators
        call it to check thresholds before a tick runs.
        """
        running = await self.store.find_running_candidates()
        waiting = await self.store.find_waiting_candidates()

        return IdleCandidates(
            warning_needed=[
                s.id for s in running if self.policy.needs_warning(s, s.reminder, now)
            ],
            closure_needed=[
                s.id for s in running + waiting if self.policy.needs_auto_close(s, now)
            ],
        )

    async def _scan(
        self,
        query: Callable[[], Awaitable[List[InteractionSnapshot]]],
        label: str,
        result: TickResult,
    ) -> List[InteractionSnapshot]:
        try:
            return await query()
        except StoreUnavailable as e:
            self.logger.error(f"Could not load {label} interactions: {e}")
            result.scan_failures += 1
            return []

    def _is_due(
        self,
        snapshot: InteractionSnapshot,
        check: Callable[[InteractionSnapshot], bool],
        result: TickResult,
    ) -> bool:
        try:
            return check(snapshot)
        except Exception as e:
            self.logger.error(
                f"Could not evaluate interaction {snapshot.id}: {e}", exc_info=True
            )
            result.failed += 1
            return False

    async def _process(
        self,
        snapshot: InteractionSnapshot,
        action: Awaitable[Optional[str]],
        label: str,
        result: TickResult,
    ) -> None:
        try:
            outcome = await asyncio.wait_for(action, self.candidate_timeout)
        except asyncio.TimeoutError:
            self.logger.error(
                f"Timed out after {self.candidate_timeout}s trying to {label} interaction {snapshot.id}"
            )
            result.failed += 1
            return
        except AlreadyResolved:
            self.logger.info(f"Interaction {snapshot.id} was already resolved elsewhere")
            result.skipped += 1
            return
        except (NotFound, InvalidState) as e:
            self.logger.warning(f"Skipping interaction {snapshot.id}: {e}")
            result.skipped += 1
            return
        except StoreUnavailable as e:
            self.logger.error(f"Error trying to {label} interaction {snapshot.id}: {e}")
            result.failed += 1
            return
        except Exception as e:
            self.logger.error(
                f"Unexpected error trying to {label} interaction {snapshot.id}: {e}",
                exc_info=True,
            )
            result.failed += 1
            return

        if outcome == "warned":
            result.warned += 1
        elif outcome == "closed":
            result.closed += 1
        else:
            result.skipped += 1

    async def _warn(self, snapshot: InteractionSnapshot, now: datetime) -> Optional[str]:
        idle_minutes = reminder_interval(snapshot.reminder)
        text = self.composer.warning(idle_minutes, self.policy.close_after_warn_minutes)
        guard = self.policy.warning_guard(snapshot, snapshot.reminder, now)

        if await self.service.warn_before_closing(snapshot.id, text, now=now, guard=guard):
            return "warned"
        return None

    async def _close(self, snapshot: InteractionSnapshot, now: datetime) -> Optional[str]:
        guard = self.policy.auto_close_guard(snapshot, now)
        reason = self.policy.auto_close_reason(snapshot)

        if not await self.service.resolve_interaction(snapshot.id, reason, now=now, guard=guard):
            return None

        if self.notify_on_close:
            try:
                chat = await self.store.get_chat(snapshot.chat_id)
                if chat is not None:
                    self.logger.info(f"Sending auto-closure message for chat {chat.id}")
                    await self.service.deliver(
                        chat, snapshot.id, self.composer.closure(), now
                    )
            except StoreUnavailable as e:
                # The interaction is already resolved; only the courtesy notice is lost
                self.logger.error(f"Could not record auto-closure message for {snapshot.id}: {e}")

        return "closed"
