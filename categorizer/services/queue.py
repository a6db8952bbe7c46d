"""Work queue abstraction with at-least-once delivery, visibility leases and a dead-letter queue.

Two backends share the ``WorkQueue`` interface:

- ``InMemoryWorkQueue`` keeps messages in process. A received message stays invisible for its lease; once it has been
  delivered ``max_receive_count`` times without being acknowledged it is moved to ``dead_letters``.
- ``SQSWorkQueue`` talks to Amazon SQS through boto3. Leases map to SQS visibility timeouts and the dead-letter queue
  is the queue's redrive policy.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from categorizer.core.errors import ConfigurationError, DeliveryFailure
from categorizer.core.settings import Settings
from categorizer.core.utils import get_logger

SQS_MAX_MESSAGES = 10

logger = get_logger("expense-categorizer.queue")


@dataclass(frozen=True)
class QueueMessage:
    """A delivered message and the handle needed to acknowledge it."""

    message_id: str
    body: str
    receipt_handle: str
    receive_count: int = 1


class WorkQueue(ABC):
    """Abstract base class for work queues."""

    @abstractmethod
    async def send(self, body: str) -> str:
        """Enqueue ``body`` and return its message id."""

    @abstractmethod
    async def receive(self, max_messages: int = 10, visibility_timeout: int | None = None) -> list[QueueMessage]:
        """Lease up to ``max_messages`` visible messages."""

    @abstractmethod
    async def ack(self, message: QueueMessage) -> None:
        """Delete a processed message."""

    @abstractmethod
    async def nack(self, message: QueueMessage) -> None:
        """Release a message for immediate redelivery."""


@dataclass
class _Entry:
    body: str
    receive_count: int = 0
    visible_at: float = 0.0
    receipt_handle: str | None = None


class InMemoryWorkQueue(WorkQueue):
    """Process-local FIFO queue with visibility leases and a dead-letter list."""

    def __init__(
        self,
        visibility_timeout: int = 30,
        max_receive_count: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the queue with its lease length, redrive ceiling and clock."""
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self.clock = clock
        self.dead_letters: list[QueueMessage] = []
        self._entries: OrderedDict[str, _Entry] = OrderedDict()

    def __len__(self) -> int:
        """Messages still in the queue (visible or leased)."""
        return len(self._entries)

    async def send(self, body: str) -> str:
        """Append a message."""
        message_id = str(uuid.uuid4())
        self._entries[message_id] = _Entry(body=body)
        return message_id

    async def receive(self, max_messages: int = 10, visibility_timeout: int | None = None) -> list[QueueMessage]:
        """Lease visible messages, dead-lettering those already delivered too often."""
        lease = self.visibility_timeout if visibility_timeout is None else visibility_timeout
        delivered: list[QueueMessage] = []
        now = self.clock()
        for message_id, entry in list(self._entries.items()):
            if len(delivered) >= max_messages:
                break
            if entry.visible_at > now:
                continue
            if entry.receive_count >= self.max_receive_count:
                del self._entries[message_id]
                self.dead_letters.append(
                    QueueMessage(message_id, entry.body, entry.receipt_handle or "", entry.receive_count)
                )
                logger.warning(f"Message {message_id} moved to DLQ after {entry.receive_count} receives")
                continue
            entry.receive_count += 1
            entry.visible_at = now + lease
            entry.receipt_handle = f"{message_id}:{entry.receive_count}"
            delivered.append(QueueMessage(message_id, entry.body, entry.receipt_handle, entry.receive_count))
        return delivered

    async def ack(self, message: QueueMessage) -> None:
        """Delete the message; stale receipts of an already-deleted message are ignored."""
        self._entries.pop(message.message_id, None)

    async def nack(self, message: QueueMessage) -> None:
        """End the lease now so the message is redelivered on the next receive."""
        entry = self._entries.get(message.message_id)
        if entry is not None and entry.receipt_handle == message.receipt_handle:
            entry.visible_at = self.clock()


class SQSWorkQueue(WorkQueue):
    """Work queue backed by Amazon SQS."""

    def __init__(
        self,
        queue_url: str,
        client: object | None = None,
        *,
        wait_time_seconds: int = 20,
        visibility_timeout: int | None = None,
        region_name: str | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        """Initialize the queue with its URL and an optional preconfigured boto3 SQS client."""
        self.queue_url = queue_url
        self.sqs = client or boto3.client("sqs", region_name=region_name, endpoint_url=endpoint_url)
        self.wait_time_seconds = wait_time_seconds
        self.visibility_timeout = visibility_timeout

    async def _call(self, operation: str, **params: object) -> dict:
        try:
            return await asyncio.to_thread(getattr(self.sqs, operation), QueueUrl=self.queue_url, **params)
        except (ClientError, BotoCoreError) as exc:
            msg = f"SQS {operation} failed: {exc}"
            logger.error(msg)
            raise DeliveryFailure(msg) from exc

    async def send(self, body: str) -> str:
        """Send one message."""
        response = await self._call("send_message", MessageBody=body)
        return response["MessageId"]

    async def receive(self, max_messages: int = 10, visibility_timeout: int | None = None) -> list[QueueMessage]:
        """Long-poll for up to ten messages."""
        params: dict[str, object] = {
            "MaxNumberOfMessages": max(1, min(max_messages, SQS_MAX_MESSAGES)),
            "WaitTimeSeconds": self.wait_time_seconds,
            "AttributeNames": ["ApproximateReceiveCount"],
        }
        lease = visibility_timeout if visibility_timeout is not None else self.visibility_timeout
        if lease is not None:
            params["VisibilityTimeout"] = lease
        response = await self._call("receive_message", **params)
        return [
            QueueMessage(
                message_id=item["MessageId"],
                body=item["Body"],
                receipt_handle=item["ReceiptHandle"],
                receive_count=int(item.get("Attributes", {}).get("ApproximateReceiveCount", 1)),
            )
            for item in response.get("Messages", [])
        ]

    async def ack(self, message: QueueMessage) -> None:
        """Delete the message."""
        await self._call("delete_message", ReceiptHandle=message.receipt_handle)

    async def nack(self, message: QueueMessage) -> None:
        """Make the message visible again right away."""
        await self._call("change_message_visibility", ReceiptHandle=message.receipt_handle, VisibilityTimeout=0)


def build_work_queue(settings: Settings) -> WorkQueue:
    """Create the configured queue backend."""
    if settings.queue_backend == "sqs":
        if not settings.sqs_queue_url:
            msg = "SQS_QUEUE_URL must be set when QUEUE_BACKEND=sqs"
            raise ConfigurationError(msg)
        return SQSWorkQueue(
            settings.sqs_queue_url,
            visibility_timeout=settings.visibility_timeout,
            region_name=settings.aws_region,
            endpoint_url=settings.aws_endpoint_url,
        )
    logger.info("Using in-memory work queue")
    return InMemoryWorkQueue(
        visibility_timeout=settings.visibility_timeout,
        max_receive_count=settings.max_receive_count,
    )
