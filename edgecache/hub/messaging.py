"""Correlated request/reply messaging between the edge process and application instances.

The channel to each instance is fire-and-forget and unordered. Correlation
happens here: a request carries a per-sender id, and the reply names it in
``replyTo``.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from edgecache.hub.constants import MSG_CLOSE_SESSION
from edgecache.hub.errors import MessagingError, ReplyTimeout

logger = logging.getLogger(__name__)

_USE_DEFAULT = object()


# --- Wire models ---
class RequestMessage(BaseModel):
    type: str
    id: int
    payload: Any = None


class ReplyMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reply_to: int = Field(alias="replyTo")
    payload: Any = None

    def to_wire(self) -> dict[str, Any]:
        return {"replyTo": self.reply_to, "payload": self.payload}


class CloseSessionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")


def parse_message(data: Any) -> RequestMessage | ReplyMessage:
    """Parse an inbound message; a non-null ``replyTo`` marks a reply.

    Raises:
        ValueError: If the message matches neither shape
    """
    if not isinstance(data, dict):
        raise ValueError(f"Message must be an object, got {type(data).__name__}")
    try:
        if data.get("replyTo") is not None:
            return ReplyMessage.model_validate(data)
        return RequestMessage.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Malformed message: {e}") from e


class Instance(Protocol):
    """A connected application instance."""

    id: str

    def post_message(self, message: dict[str, Any]) -> None:
        """Queue a message for delivery without waiting for it to be sent."""
        ...


class MessagingContext:
    """Correlation counter and bounded table of replies still awaited.

    One context belongs to one sender; constructing several gives fully
    independent senders (ids restart at 1 in each).
    """

    def __init__(self, max_pending: int = 1024):
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self.max_pending = max_pending
        self._counter = 0
        self._pending: dict[int, asyncio.Future] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def next_id(self) -> int:
        self._counter += 1
        return self._counter

    def register(self, message_id: int) -> asyncio.Future:
        """Create the future a reply to ``message_id`` will resolve.

        Raises:
            MessagingError: When the table is full or the id is already pending
        """
        if message_id in self._pending:
            raise MessagingError(f"Message id {message_id} is already awaiting a reply")
        if len(self._pending) >= self.max_pending:
            raise MessagingError(f"Too many pending replies ({self.max_pending})")
        future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        return future

    def resolve(self, message_id: int, payload: Any) -> bool:
        """Deliver a reply payload. Returns False for unknown ids."""
        future = self._pending.pop(message_id, None)
        if future is None:
            return False
        if not future.done():
            future.set_result(payload)
        return True

    def evict(self, message_id: int) -> bool:
        future = self._pending.pop(message_id, None)
        if future is None:
            return False
        if not future.done():
            future.cancel()
        return True


Handler = Callable[[Any, Instance], Awaitable[Any]]


class Messenger:
    """Sends correlated requests to instances and dispatches inbound messages."""

    def __init__(
        self,
        context: MessagingContext,
        instances: Callable[[], Iterable[Instance]],
        reply_timeout: float | None = None,
    ):
        """Initialize messenger.

        Args:
            context: Owned correlation state
            instances: Returns the currently connected instances
            reply_timeout: Default deadline in seconds (None or 0 waits forever)
        """
        self.context = context
        self.instances = instances
        self.reply_timeout = reply_timeout
        self.handlers: dict[str, Handler] = {MSG_CLOSE_SESSION: self._handle_close_session}

    def register_handler(self, message_type: str, handler: Handler):
        self.handlers[message_type] = handler

    async def send_and_wait_for_reply(
        self,
        target: Instance,
        message_type: str,
        payload: Any = None,
        timeout: Any = _USE_DEFAULT,
    ) -> Any:
        """Send a request to an instance and wait for its reply payload.

        Raises:
            ReplyTimeout: If a deadline is set and passes first
            MessagingError: If the message cannot be registered or posted
        """
        if timeout is _USE_DEFAULT:
            timeout = self.reply_timeout

        message_id = self.context.next_id()
        future = self.context.register(message_id)
        try:
            target.post_message(RequestMessage(type=message_type, id=message_id, payload=payload).model_dump())
        except Exception as e:
            self.context.evict(message_id)
            raise MessagingError(f"Could not post {message_type} to instance {target.id}: {e}") from e

        if not timeout:
            return await future
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self.context.evict(message_id)
            raise ReplyTimeout(message_id, target.id, timeout) from None

    async def close_session(self, session_id: str, requesting_instance_id: str | None) -> list[str]:
        """Ask every other connected instance to close a session and wait for all of them.

        Returns:
            Ids of instances that could not be reached or did not reply in time
        """
        targets = [i for i in self.instances() if i.id != requesting_instance_id]
        results = await asyncio.gather(
            *(self.send_and_wait_for_reply(t, MSG_CLOSE_SESSION, {"sessionId": session_id}) for t in targets),
            return_exceptions=True,
        )

        unresponsive = []
        for target, result in zip(targets, results):
            if isinstance(result, MessagingError):
                logger.warning(f"closeSession {session_id}: {result}")
                unresponsive.append(target.id)
            elif isinstance(result, BaseException):
                raise result
        logger.info(
            "Closed session %s on %d instance(s)", session_id, len(targets) - len(unresponsive)
        )
        return unresponsive

    async def _handle_close_session(self, payload: Any, sender: Instance) -> None:
        try:
            body = CloseSessionPayload.model_validate(payload)
        except ValidationError as e:
            raise ValueError(f"closeSession payload needs a sessionId: {e}") from e
        await self.close_session(body.session_id, sender.id)

    async def dispatch(self, data: Any, sender: Instance):
        """Route an inbound message.

        Replies resolve the matching pending entry and go no further.
        Requests run the handler for their type; once it completes, a
        single reply carrying its result goes back to the sender.
        """
        try:
            message = parse_message(data)
        except ValueError as e:
            logger.warning(f"Dropping message from instance {sender.id}: {e}")
            return

        if isinstance(message, ReplyMessage):
            if not self.context.resolve(message.reply_to, message.payload):
                logger.debug(f"Ignoring reply to unknown message {message.reply_to}")
            return

        handler = self.handlers.get(message.type)
        if handler is None:
            logger.debug(f"Ignoring message of unknown type '{message.type}' from {sender.id}")
            return

        try:
            result = await handler(message.payload, sender)
        except Exception:
            logger.exception("Handler for '%s' failed (message %d from %s)", message.type, message.id, sender.id)
            return

        sender.post_message(ReplyMessage(reply_to=message.id, payload=result).to_wire())
