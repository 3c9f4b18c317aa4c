"""Session delivery channel.

Each target session has a FIFO mailbox. The ingress handler pushes
formatted envelopes; the session side either streams them through a
consumer (one live consumer per session) or drains them by polling.

Delivery from the mailbox is at-least-once: a consumer receives the
head message and it is removed only when the consumer asks for the next
one. A consumer that goes away while holding a message leaves it at the
head of the mailbox for the next consumer.

Overflow policy: a push into a full mailbox is rejected with
MailboxFullError. Queued messages are never discarded to make room.
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


DEFAULT_MAILBOX_CAPACITY = 100
DEFAULT_MAX_SESSIONS = 256


class DeliveryError(Exception):
    """Raised when a session channel refuses a message.

    Attributes:
        session_id: The session the message was addressed to.
    """

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(message)


class MailboxFullError(DeliveryError):
    """The session mailbox is at capacity."""

    def __init__(self, session_id: str, capacity: int):
        self.capacity = capacity
        super().__init__(
            session_id,
            f"Mailbox for session '{session_id}' is full ({capacity} messages)",
        )


class SessionNotFoundError(DeliveryError):
    """No mailbox exists for the session and no new one can be opened."""

    def __init__(self, session_id: str, max_sessions: int):
        self.max_sessions = max_sessions
        super().__init__(
            session_id,
            f"Session '{session_id}' has no mailbox and the limit of "
            f"{max_sessions} sessions is reached",
        )


class ConsumerAttachedError(Exception):
    """A consumer is already attached to the session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' already has a consumer")


@dataclass(frozen=True)
class DeliveryReceipt:
    """Result of a successful push.

    Attributes:
        session_id: Target session.
        live: Whether a consumer was attached when the message was queued.
        depth: Mailbox size after the push.
    """

    session_id: str
    live: bool
    depth: int


class _Mailbox:
    def __init__(self):
        self.messages: Deque[Tuple[int, str]] = deque()
        self.ready = asyncio.Event()
        self.consumer: Optional["SessionConsumer"] = None


class SessionConsumer:
    """Live consumer of one session mailbox.

    Use as an async iterator, ideally inside ``async with`` so the
    consumer is detached when iteration stops:

        >>> async with channel.consume("sess-1") as consumer:
        ...     async for text in consumer:
        ...         handle(text)
    """

    def __init__(self, channel: "SessionDeliveryChannel", session_id: str, mailbox: _Mailbox):
        self._channel = channel
        self._mailbox = mailbox
        self.session_id = session_id
        self._held: Optional[int] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "SessionConsumer":
        return self

    async def __anext__(self) -> str:
        messages = self._mailbox.messages
        # Acknowledge the previously returned message
        if self._held is not None:
            if messages and messages[0][0] == self._held:
                messages.popleft()
            self._held = None

        while not messages:
            if self._closed:
                raise StopAsyncIteration
            self._mailbox.ready.clear()
            await self._mailbox.ready.wait()

        if self._closed:
            raise StopAsyncIteration

        sequence, text = messages[0]
        self._held = sequence
        return text

    async def aclose(self) -> None:
        """Detach without acknowledging the held message."""
        if self._closed:
            return
        self._closed = True
        self._mailbox.ready.set()
        self._channel._detach(self.session_id, self)

    async def __aenter__(self) -> "SessionConsumer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class SessionDeliveryChannel:
    """Per-session FIFO mailboxes.

    Attributes:
        mailbox_capacity: Maximum queued messages per session.
        max_sessions: Maximum number of mailboxes held at once.
    """

    def __init__(
        self,
        mailbox_capacity: int = DEFAULT_MAILBOX_CAPACITY,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ):
        self.mailbox_capacity = mailbox_capacity
        self.max_sessions = max_sessions
        self._mailboxes: Dict[str, _Mailbox] = {}
        self._sequence = itertools.count(1)

    def push(self, session_id: str, text: str) -> DeliveryReceipt:
        """Queue a message for a session.

        Args:
            session_id: Target session.
            text: Formatted envelope.

        Returns:
            DeliveryReceipt describing the hand-off.

        Raises:
            MailboxFullError: If the mailbox is at capacity.
            SessionNotFoundError: If a new mailbox would exceed max_sessions.
        """
        mailbox = self._open(session_id)
        if len(mailbox.messages) >= self.mailbox_capacity:
            logger.warning(
                "Mailbox full, rejecting message",
                extra={"session_id": session_id, "capacity": self.mailbox_capacity},
            )
            raise MailboxFullError(session_id, self.mailbox_capacity)

        mailbox.messages.append((next(self._sequence), text))
        mailbox.ready.set()

        receipt = DeliveryReceipt(
            session_id=session_id,
            live=mailbox.consumer is not None,
            depth=len(mailbox.messages),
        )
        logger.debug(
            "Queued message for session",
            extra={"session_id": session_id, "live": receipt.live, "depth": receipt.depth},
        )
        return receipt

    def consume(self, session_id: str) -> SessionConsumer:
        """Attach the live consumer for a session.

        Raises:
            ConsumerAttachedError: If another consumer is attached.
            SessionNotFoundError: If a new mailbox would exceed max_sessions.
        """
        mailbox = self._mailboxes.get(session_id)
        if mailbox is not None and mailbox.consumer is not None:
            raise ConsumerAttachedError(session_id)

        mailbox = self._open(session_id)
        consumer = SessionConsumer(self, session_id, mailbox)
        mailbox.consumer = consumer
        logger.info(
            "Consumer attached",
            extra={"session_id": session_id, "pending": len(mailbox.messages)},
        )
        return consumer

    def drain(self, session_id: str) -> List[str]:
        """Remove and return every queued message for a session."""
        mailbox = self._mailboxes.get(session_id)
        if mailbox is None:
            return []
        messages = [text for _, text in mailbox.messages]
        mailbox.messages.clear()
        self._reclaim(session_id)
        return messages

    def pending(self, session_id: str) -> int:
        mailbox = self._mailboxes.get(session_id)
        return len(mailbox.messages) if mailbox else 0

    def has_consumer(self, session_id: str) -> bool:
        mailbox = self._mailboxes.get(session_id)
        return mailbox is not None and mailbox.consumer is not None

    def sessions(self) -> List[str]:
        """Sessions that currently hold a mailbox."""
        return list(self._mailboxes)

    async def close(self) -> None:
        """Detach every consumer."""
        consumers = [m.consumer for m in self._mailboxes.values() if m.consumer]
        for consumer in consumers:
            await consumer.aclose()

    def _open(self, session_id: str) -> _Mailbox:
        mailbox = self._mailboxes.get(session_id)
        if mailbox is not None:
            return mailbox

        if len(self._mailboxes) >= self.max_sessions:
            for candidate in list(self._mailboxes):
                self._reclaim(candidate)
            if len(self._mailboxes) >= self.max_sessions:
                raise SessionNotFoundError(session_id, self.max_sessions)

        mailbox = _Mailbox()
        self._mailboxes[session_id] = mailbox
        return mailbox

    def _detach(self, session_id: str, consumer: SessionConsumer) -> None:
        mailbox = self._mailboxes.get(session_id)
        if mailbox is None or mailbox.consumer is not consumer:
            return
        mailbox.consumer = None
        logger.info(
            "Consumer detached",
            extra={"session_id": session_id, "pending": len(mailbox.messages)},
        )
        self._reclaim(session_id)

    def _reclaim(self, session_id: str) -> None:
        mailbox = self._mailboxes.get(session_id)
        if mailbox is not None and not mailbox.messages and mailbox.consumer is None:
            del self._mailboxes[session_id]
