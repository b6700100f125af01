from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Literal

from .access_gate import AccessGate, TransactionStatusOracle, available_presets
from .change_feed import ChangeFeed, FeedSubscription
from .config import Settings
from .contact_detection import ContactAdvisory, classify
from .delivery import DeliveryEngine, MessageWriter, ViewEntry
from .errors import ChannelDisconnected, ConversationError, GateError, TransientWriteError, ValidationError
from .models import GateMode
from .thread_store import ThreadRepository

logger = logging.getLogger(__name__)

SendOutcomeStatus = Literal["sent", "failed", "rejected"]


@dataclass(frozen=True)
class SendOutcome:
    status: SendOutcomeStatus
    mode: GateMode
    entry: ViewEntry | None = None
    advisory: ContactAdvisory | None = None
    error: ConversationError | None = None


class ConversationSession:
    """Controller for one open thread as seen by one participant."""

    def __init__(
        self,
        *,
        thread_id: str,
        viewer_id: str,
        repository: ThreadRepository,
        writer: MessageWriter,
        feed: ChangeFeed,
        oracle: TransactionStatusOracle,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.thread_id = thread_id
        self.viewer_id = viewer_id
        self._repository = repository
        self._feed = feed
        self._settings = settings
        self._sleep = sleep
        self._gate = AccessGate(repository=repository, oracle=oracle)
        self._engine = DeliveryEngine(
            thread_id=thread_id,
            sender_id=viewer_id,
            writer=writer,
            preset_catalog=settings.preset_questions,
            clock=clock,
        )
        self._mode: GateMode = "restricted"
        self._subscription: FeedSubscription | None = None
        self._listener: asyncio.Task[None] | None = None
        self._opened = False
        self._closed = False
        self.compose_text = ""
        self.feed_error: ChannelDisconnected | None = None

    async def __aenter__(self) -> ConversationSession:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def mode(self) -> GateMode:
        return self._mode

    @property
    def engine(self) -> DeliveryEngine:
        return self._engine

    @property
    def closed(self) -> bool:
        return self._closed

    def messages(self) -> list[ViewEntry]:
        return self._engine.view()

    def available_presets(self) -> list[str]:
        if self._mode == "unlocked":
            return []
        return available_presets(
            self._engine.view(),
            sender_id=self.viewer_id,
            catalog=self._settings.preset_questions,
        )

    async def open(self) -> None:
        if self._opened:
            return
        # Subscribe before loading history so nothing lands between the two.
        try:
            self._subscription = self._feed.subscribe(self.thread_id)
        except ChannelDisconnected as exc:
            # The listener resubscribes and merges whatever this history load misses.
            logger.warning("change feed unavailable while opening thread %s: %s", self.thread_id, exc)
            self._subscription = None
        try:
            self._mode = await asyncio.to_thread(self._gate.mode, self.thread_id, self.viewer_id)
            history = await asyncio.to_thread(
                self._repository.history,
                self.thread_id,
                limit=self._settings.history_limit,
            )
        except BaseException:
            if self._subscription is not None:
                self._feed.unsubscribe(self._subscription)
                self._subscription = None
            raise
        self._engine.load_history(history)
        self._opened = True
        self._listener = asyncio.create_task(self._listen(), name=f"conversation-feed-{self.thread_id}")
        logger.info(
            "opened conversation session thread=%s viewer=%s mode=%s messages=%d",
            self.thread_id,
            self.viewer_id,
            self._mode,
            len(history),
        )

    async def refresh_gate(self, *, allow_relock: bool = False) -> GateMode:
        self._mode = await asyncio.to_thread(
            self._gate.refresh,
            self.thread_id,
            self.viewer_id,
            allow_relock=allow_relock,
        )
        return self._mode

    async def send(self, text: str) -> SendOutcome:
        if not self._opened or self._closed:
            raise ConversationError(f"session for thread {self.thread_id} is not open")
        if self._mode == "restricted":
            try:
                await self.refresh_gate()
            except TransientWriteError as exc:
                logger.warning("gate check failed before send on thread %s: %s", self.thread_id, exc)
                self.compose_text = text
                return SendOutcome(status="failed", mode=self._mode, error=exc)
        mode = self._mode

        advisory = classify(text) if mode == "unlocked" else None
        self.compose_text = ""
        try:
            result = await self._engine.send(text, mode=mode)
        except (GateError, ValidationError) as exc:
            self.compose_text = text
            return SendOutcome(status="rejected", mode=mode, error=exc)
        except BaseException:
            if not self._closed:
                self.compose_text = text
            raise

        if result.status == "failed":
            if not self._closed:
                self.compose_text = result.restored_text or text
            return SendOutcome(status="failed", mode=mode, advisory=advisory, error=result.error)

        entry = None
        if result.message is not None:
            entry = next(
                (item for item in self._engine.view() if item.message_id == result.message.message_id),
                None,
            )
        return SendOutcome(status="sent", mode=mode, entry=entry, advisory=advisory)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine.close()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("feed listener for thread %s stopped with an error", self.thread_id)
            self._listener = None
        if self._subscription is not None:
            self._feed.unsubscribe(self._subscription)
            self._subscription = None
        logger.info("closed conversation session thread=%s viewer=%s", self.thread_id, self.viewer_id)

    async def _listen(self) -> None:
        while not self._closed:
            subscription = self._subscription
            if subscription is None:
                if not await self._resubscribe():
                    return
                continue
            try:
                message = await subscription.get()
            except ChannelDisconnected as exc:
                logger.warning("change feed dropped for thread %s: %s", self.thread_id, exc)
                self._feed.unsubscribe(subscription)
                self._subscription = None
                if not await self._resubscribe():
                    return
                continue
            self._engine.apply_inbound(message)

    async def _resubscribe(self) -> bool:
        delay = self._settings.feed_resubscribe_initial_delay_seconds
        attempts = max(1, self._settings.feed_resubscribe_max_attempts)
        for attempt in range(1, attempts + 1):
            await self._sleep(delay)
            if self._closed:
                return False
            try:
                subscription = self._feed.subscribe(self.thread_id)
            except ChannelDisconnected as exc:
                logger.info(
                    "resubscribe attempt %d/%d failed for thread %s: %s",
                    attempt,
                    attempts,
                    self.thread_id,
                    exc,
                )
                delay = min(delay * 2, self._settings.feed_resubscribe_max_delay_seconds)
                continue

            self._subscription = subscription
            try:
                history = await asyncio.to_thread(
                    self._repository.history,
                    self.thread_id,
                    limit=self._settings.history_limit,
                )
            except ConversationError as exc:
                logger.warning("history re-fetch failed for thread %s: %s", self.thread_id, exc)
                history = []
            repaired = self._engine.merge_history(history)
            self.feed_error = None
            logger.info(
                "resubscribed to thread %s after %d attempt(s); repaired %d missed message(s)",
                self.thread_id,
                attempt,
                repaired,
            )
            return True

        self.feed_error = ChannelDisconnected(f"could not resubscribe to thread {self.thread_id}")
        logger.error("giving up on change feed for thread %s after %d attempts", self.thread_id, attempts)
        return False
