"""Lifecycle event emission.

Each event is a protobuf message wrapped in a CloudEvents envelope (fresh
UUID id, source, versioned type, time) and written to Kafka in binary mode:
envelope attributes travel as ``ce_*`` headers, the serialized protobuf is
the record value.

Partitioning: by default records are keyed by the instance's unique ID so
events of one instance stay ordered on one partition. ``PartitionKey.MESSAGE``
keys by the envelope id instead, which spreads load but gives up per-instance
ordering.

Nothing here retries. Construction problems raise PayloadError, delivery
problems raise DeliveryError; neither undoes an already persisted state change.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional, Union

from cloudevents import exceptions as cloud_exceptions
from cloudevents.http import CloudEvent
from cloudevents.kafka import KafkaMessage, to_binary

from instance_controller.bus import DeliveryError, MessageBus
from instance_controller.payload import (
    InstanceEndedEvent,
    InstanceStartedEvent,
    InstanceStateChangedEvent,
    PayloadError,
    instance_to_proto,
    to_struct,
)
from instance_controller.resources import Instance

logger = logging.getLogger(__name__)

EVENT_TYPE_PREFIX = "network.cow.instance"
TYPE_STARTED = f"{EVENT_TYPE_PREFIX}.started.v1"
TYPE_ENDED = f"{EVENT_TYPE_PREFIX}.ended.v1"
TYPE_STATE_CHANGED = f"{EVENT_TYPE_PREFIX}.state-changed.v1"
CONTENT_TYPE = "application/protobuf"

EMIT_ERRORS = (PayloadError, DeliveryError)

RawState = Optional[Union[str, bytes]]


class PartitionKey(str, enum.Enum):
    INSTANCE = "instance"
    MESSAGE = "message"


def _raw_data(data):
    return data


class Emitter:
    def __init__(
        self,
        bus: MessageBus,
        topic: str,
        source: str,
        partition_key: PartitionKey = PartitionKey.INSTANCE,
    ):
        self._bus = bus
        self._topic = topic
        self._source = source
        self._partition_key = PartitionKey(partition_key)

    def instance_created(self, instance: Instance) -> str:
        msg = InstanceStartedEvent(instance=instance_to_proto(instance))
        return self._emit(TYPE_STARTED, msg, instance)

    def instance_ended(self, instance: Instance) -> str:
        msg = InstanceEndedEvent(instance=instance_to_proto(instance))
        return self._emit(TYPE_ENDED, msg, instance)

    def instance_state_changed(self, instance: Instance, old_state: RawState, new_state: RawState) -> str:
        msg = InstanceStateChangedEvent(
            instance=instance_to_proto(instance),
            old_state=to_struct(old_state),
            new_state=to_struct(new_state),
        )
        return self._emit(TYPE_STATE_CHANGED, msg, instance)

    def build(self, event_type: str, msg, instance: Instance) -> KafkaMessage:
        """Wrap a serialized event in a CloudEvents envelope, in Kafka binary mode."""
        event = CloudEvent(
            {"type": event_type, "source": self._source, "datacontenttype": CONTENT_TYPE},
            msg.SerializeToString(),
        )
        try:
            return to_binary(event, data_marshaller=_raw_data, key_mapper=self._key_for(instance))
        except cloud_exceptions.GenericException as e:
            raise PayloadError(f"could not encode {event_type} envelope: {e}") from e

    def _key_for(self, instance: Instance):
        if self._partition_key is PartitionKey.MESSAGE:
            return lambda event: event["id"]
        return lambda event: instance.status.id or instance.key

    def _emit(self, event_type: str, msg, instance: Instance) -> str:
        record = self.build(event_type, msg, instance)
        self._bus.send(self._topic, record.key, record.headers, record.value)
        message_id = record.headers["ce_id"].decode("utf-8")
        logger.info(f"[{instance.key}] Emitted {event_type} (id={message_id}, key={record.key})")
        return message_id
