"""
Authorization and routing.

A request passes three gates in a fixed order before anything is sent:

  1. the topic must exist                      -> TopicNotFound (404)
  2. the caller address must be allow-listed   -> Forbidden (403)
  3. the body must normalize to a Message      -> BadRequest (400/415)

The body is not looked at until gate 2 has passed. On success the engine
emits one DeliveryJob per recipient, in the topic's recipient order, each
carrying the same Message. Topic and sender names are display metadata
only; the source address is the sole trust signal.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Iterable, Optional, Protocol

from relay_gateway.delivery import DeliveryOutcome
from relay_gateway.errors import ConfigError, Forbidden, TopicNotFound, UnsupportedContentType
from relay_gateway.messages import Content, Message, normalize
from relay_gateway.networks import Address
from relay_gateway.topics import Denied, NotFound, Topic, TopicRegistry


class DeliveryDispatcher(Protocol):
    def register_recipients(self, recipients: Iterable[str]) -> list[str]: ...

    def send(self, recipient: str, message: Message) -> Awaitable[DeliveryOutcome]: ...


@dataclass(frozen=True)
class InboundRequest:
    topic_name: str
    sender_name: str
    source_address: Address
    content: Optional[Content]
    raw_body: bytes


@dataclass(frozen=True)
class DeliveryJob:
    recipient: str
    message: Message


class RoutingEngine:
    def __init__(self, registry: TopicRegistry, dispatcher: DeliveryDispatcher) -> None:
        self._registry = registry
        self.dispatcher = dispatcher
        self.logger = logging.getLogger("relay-gateway.engine")

    @property
    def registry(self) -> TopicRegistry:
        return self._registry

    def replace_registry(self, registry: TopicRegistry) -> None:
        """Publish a new registry snapshot.

        Every recipient of the new registry is registered with the dispatcher
        first. If any of them cannot be, ConfigError is raised and the current
        snapshot stays in place.
        """
        recipients = list(dict.fromkeys(r for topic in registry for r in topic.recipients))
        rejected = self.dispatcher.register_recipients(recipients)
        if rejected:
            raise ConfigError(f"no delivery target for recipients: {', '.join(rejected)}")

        # single reference swap; requests already admitted keep the topic they resolved
        self._registry = registry
        self.logger.info("registry replaced", extra={"topicCount": len(registry)})

    def admit(self, topic_name: str, source_address: Address) -> Topic:
        """Resolve the topic and check the caller address against its allow list."""
        decision = self._registry.authorize(topic_name, source_address)
        if isinstance(decision, NotFound):
            self.logger.info("topic not found", extra={"topic": topic_name})
            raise TopicNotFound(topic_name)
        if isinstance(decision, Denied):
            self.logger.info("source address denied", extra={"topic": topic_name, "source": str(source_address)})
            raise Forbidden("source address is not allowed for this topic")
        return decision.topic

    def build_jobs(self, topic: Topic, request: InboundRequest) -> list[DeliveryJob]:
        if request.content is None:
            raise UnsupportedContentType("content type must be text/plain or multipart/form-data")

        message = normalize(request.sender_name, request.topic_name, request.content, request.raw_body)
        return [DeliveryJob(recipient, message) for recipient in topic.recipients]

    def route(self, request: InboundRequest) -> list[DeliveryJob]:
        topic = self.admit(request.topic_name, request.source_address)
        return self.build_jobs(topic, request)

    async def _deliver(self, job: DeliveryJob) -> DeliveryOutcome:
        try:
            outcome = await self.dispatcher.send(job.recipient, job.message)
        except Exception as exc:
            self.logger.exception("dispatcher raised for recipient %s", job.recipient)
            outcome = DeliveryOutcome.failed(job.recipient, str(exc) or type(exc).__name__)

        if not outcome.ok:
            self.logger.error(
                "delivery failed",
                extra={"recipient": job.recipient, "topic": job.message.topic, "error": outcome.reason},
            )
        return outcome

    async def dispatch(self, jobs: list[DeliveryJob]) -> list[DeliveryOutcome]:
        """Start one task per job in job order and wait for all of them.

        Outcomes come back in job order. A failed recipient never stops the
        others.
        """
        tasks = [asyncio.ensure_future(self._deliver(job)) for job in jobs]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))
