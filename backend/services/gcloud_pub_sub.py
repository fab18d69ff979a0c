# backend/services/gcloud_pub_sub.py
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from google.cloud import pubsub_v1

from core.config import settings

logger = logging.getLogger(__name__)

Deliver = Callable[[str, dict], Awaitable[Any]]


class GooglePubSubService:
    """
    Push fan-out over a single Google Pub/Sub topic.

    Every event carries its target channel as a message attribute; each
    app instance pulls from its subscription and hands events to the local
    WebSocket relay on the FastAPI event loop.
    """

    def __init__(
        self,
        project_id: str = settings.PROJECT_ID,
        topic_id: str = settings.TOPIC_ID,
        subscription_id: str = settings.SUBSCRIPTION_ID,
    ):
        self.publisher = pubsub_v1.PublisherClient()
        self.subscriber = pubsub_v1.SubscriberClient()
        self.topic_path = self.publisher.topic_path(project_id, topic_id)
        self.subscription_path = self.subscriber.subscription_path(project_id, subscription_id)
        self._streaming_future: Optional[pubsub_v1.subscriber.futures.StreamingPullFuture] = None

    async def trigger(self, channel: str, event: str, data: dict) -> None:
        payload = json.dumps({"channel": channel, "event": event, "data": data}).encode("utf-8")
        future = self.publisher.publish(self.topic_path, data=payload, channel=channel)
        # publish() hands back a concurrent future; wait without blocking the loop
        await asyncio.wrap_future(future)

    def start(self, loop: asyncio.AbstractEventLoop, deliver: Deliver) -> None:
        """
        Call this once on app startup.
        - loop: FastAPI's event loop
        - deliver: async function that receives (channel, event payload)
        """

        def _callback(message: pubsub_v1.subscriber.message.Message):
            try:
                event = json.loads(message.data.decode("utf-8"))
                channel = event.get("channel") or message.attributes.get("channel")
                if channel:
                    # Schedule the async handler on the FastAPI event loop
                    asyncio.run_coroutine_threadsafe(deliver(channel, event), loop)
                message.ack()
            except Exception:
                logger.exception("Error processing Pub/Sub message")
                message.nack()

        self._streaming_future = self.subscriber.subscribe(self.subscription_path, callback=_callback)
        logger.info("Listening for messages on %s...", self.subscription_path)

    def shutdown(self) -> None:
        """Call this once on app shutdown."""
        if self._streaming_future is not None:
            self._streaming_future.cancel()
        self.subscriber.close()
