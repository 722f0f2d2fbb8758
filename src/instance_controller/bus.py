from __future__ import annotations

import abc
import logging
import threading
from typing import Dict, Optional, Union

from confluent_kafka import KafkaException, Producer

logger = logging.getLogger(__name__)

Key = Optional[Union[str, bytes]]


class DeliveryError(Exception):
    """The bus reported a message as undelivered."""


class MessageBus(abc.ABC):
    @abc.abstractmethod
    def send(self, topic: str, key: Key, headers: Dict[str, bytes], value: bytes) -> None:
        """Deliver one message synchronously; raise DeliveryError if it was not delivered."""


class KafkaBus(MessageBus):
    def __init__(self, producer: Producer, flush_timeout: float = 10.0):
        self._producer = producer
        self._flush_timeout = flush_timeout

    @classmethod
    def from_config(cls, config) -> "KafkaBus":
        producer = Producer({
            "bootstrap.servers": config.kafka_brokers,
            "client.id": config.client_id,
            "enable.idempotence": True,
        })
        return cls(producer, flush_timeout=config.flush_timeout_sec)

    def send(self, topic: str, key: Key, headers: Dict[str, bytes], value: bytes) -> None:
        delivered = threading.Event()
        outcome = {}

        def _on_delivery(err, msg):
            outcome["error"] = err
            delivered.set()

        try:
            self._producer.produce(
                topic,
                value=value,
                key=key,
                headers=list(headers.items()),
                on_delivery=_on_delivery,
            )
        except (KafkaException, BufferError) as e:
            raise DeliveryError(f"produce to {topic} failed: {e}") from e

        remaining = self._producer.flush(self._flush_timeout)
        if not delivered.is_set():
            raise DeliveryError(
                f"message to {topic} not delivered within {self._flush_timeout}s "
                f"({remaining} still queued)"
            )
        if outcome.get("error") is not None:
            raise DeliveryError(f"message to {topic} undelivered: {outcome['error']}")
        logger.debug(f"Delivered to {topic} (key={key})")
