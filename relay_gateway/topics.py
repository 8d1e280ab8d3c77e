from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Union

from relay_gateway.errors import ConfigError
from relay_gateway.networks import Address, Network, matches, parse_network


@dataclass(frozen=True)
class Topic:
    name: str
    allow_list: tuple[Network, ...]
    recipients: tuple[str, ...]

    def is_allowed(self, address: Address) -> bool:
        return any(matches(network, address) for network in self.allow_list)


@dataclass(frozen=True)
class Authorized:
    topic: Topic


@dataclass(frozen=True)
class Denied:
    topic_name: str
    reason: str


@dataclass(frozen=True)
class NotFound:
    topic_name: str


AuthorizationDecision = Union[Authorized, Denied, NotFound]


class TopicRegistry:
    """Read-only topic table built once at startup.

    There is no write path after construction. A reload builds a new
    registry and swaps the reference held by the engine.
    """

    def __init__(self, topics: Mapping[str, Topic]) -> None:
        self._topics: Mapping[str, Topic] = MappingProxyType(dict(topics))

    def __len__(self) -> int:
        return len(self._topics)

    def __iter__(self) -> Iterator[Topic]:
        return iter(self._topics.values())

    def names(self) -> list[str]:
        return list(self._topics)

    def lookup(self, topic_name: str) -> Topic | None:
        return self._topics.get(topic_name)

    def is_authorized(self, topic: Topic, source_address: Address) -> bool:
        return topic.is_allowed(source_address)

    def authorize(self, topic_name: str, source_address: Address) -> AuthorizationDecision:
        topic = self.lookup(topic_name)
        if topic is None:
            return NotFound(topic_name)
        if not self.is_authorized(topic, source_address):
            return Denied(topic_name, f"{source_address} is not in the allow list")
        return Authorized(topic)


def parse_recipients(raw: Any, topic_name: str) -> tuple[str, ...]:
    if not isinstance(raw, list):
        raise ConfigError(f"topic {topic_name!r}: recipients must be a list")

    seen: set[str] = set()
    out: list[str] = []
    for item in raw:
        if isinstance(item, int) and not isinstance(item, bool):
            item = str(item)
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"topic {topic_name!r}: recipient {item!r} must be a non-empty string")
        recipient = item.strip()
        if recipient in seen:
            continue
        seen.add(recipient)
        out.append(recipient)

    if not out:
        raise ConfigError(f"topic {topic_name!r}: recipients must not be empty")
    return tuple(out)


def parse_allow_list(raw: Any, topic_name: str) -> tuple[Network, ...]:
    if raw is None:
        raise ConfigError(f"topic {topic_name!r}: allow_list is required")
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise ConfigError(f"topic {topic_name!r}: allow_list must be a list of networks")

    networks: list[Network] = []
    for item in raw:
        try:
            networks.append(parse_network(item))
        except ConfigError as exc:
            raise ConfigError(f"topic {topic_name!r}: {exc}") from exc
    return tuple(networks)


def build_topic(name: Any, entry: Any) -> Topic:
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"topic name must be a non-empty string, got {name!r}")
    if not isinstance(entry, dict):
        raise ConfigError(f"topic {name!r} must be a table")

    return Topic(
        name=name,
        allow_list=parse_allow_list(entry.get("allow_list"), name),
        recipients=parse_recipients(entry.get("recipients"), name),
    )


def build_registry(raw: Any) -> TopicRegistry:
    """Build the registry from ``{name: {...}}`` or ``[{name: ..., ...}]``.

    Raises ConfigError on the first invalid entry.
    """
    if isinstance(raw, dict):
        entries = list(raw.items())
    elif isinstance(raw, list):
        entries = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise ConfigError("each topic must be a table")
            entries.append((entry.get("name"), entry))
    else:
        raise ConfigError("topics must be a table or a list of tables")

    topics: dict[str, Topic] = {}
    for name, entry in entries:
        topic = build_topic(name, entry)
        if topic.name in topics:
            raise ConfigError(f"topic {topic.name!r} is defined more than once")
        topics[topic.name] = topic

    if not topics:
        raise ConfigError("at least one topic must be configured")

    return TopicRegistry(topics)
