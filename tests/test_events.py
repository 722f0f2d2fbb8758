"""Tests for instance_controller/payload.py, events.py and bus.py
Covers the JSON → Struct transcode, the instance projection, envelope headers,
partition keys and Kafka delivery outcomes.
"""

import json
from unittest.mock import MagicMock

import pytest
from confluent_kafka import KafkaException

from instance_controller.bus import DeliveryError, KafkaBus
from instance_controller.events import (
    CONTENT_TYPE,
    TYPE_ENDED,
    TYPE_STARTED,
    TYPE_STATE_CHANGED,
    Emitter,
    PartitionKey,
)
from instance_controller.payload import (
    MAX_DEPTH,
    InstanceProto,
    InstanceStartedEvent,
    InstanceStateChangedEvent,
    PayloadError,
    api_state,
    from_struct,
    instance_to_proto,
    to_struct,
)
from instance_controller.resources import Instance, InstanceMetadata, InstanceStatus, Player


def _make_instance(state="Running", metadata_state='{"phase": "match"}', players=None):
    return Instance(
        name="game-7",
        uid="uid-1",
        status=InstanceStatus(
            state=state,
            id="abc",
            ip="10.0.0.5",
            metadata=InstanceMetadata(state=metadata_state, players=list(players or [])),
        ),
    )


def _emitter(**kwargs):
    bus = MagicMock()
    return Emitter(bus, topic="instances", source="//controller/test", **kwargs), bus


def _sent(bus):
    topic, key, headers, value = bus.send.call_args[0]
    return topic, key, headers, value


# ── Struct transcoding ──


class TestToStruct:
    def test_round_trip(self):
        state = {
            "phase": "match",
            "round": 3,
            "ratio": 0.5,
            "open": True,
            "winner": None,
            "teams": [{"id": "red", "score": 2}, {"id": "blue", "score": 1}],
            "empty": {},
        }
        assert from_struct(to_struct(json.dumps(state))) == state

    def test_key_order_not_significant(self):
        assert from_struct(to_struct('{"b": 1, "a": 2}')) == {"a": 2, "b": 1}

    def test_bytes_input(self):
        assert from_struct(to_struct('{"name": "café"}'.encode("utf-8"))) == {"name": "café"}

    @pytest.mark.parametrize("raw", [None, "", "   ", b""])
    def test_empty_is_empty_object(self, raw):
        assert from_struct(to_struct(raw)) == {}

    def test_decoded_object(self):
        assert from_struct(to_struct({"phase": "match", "teams": ["red"]})) == {"phase": "match", "teams": ["red"]}

    def test_decoded_non_object_rejected(self):
        with pytest.raises(PayloadError, match="JSON object"):
            to_struct(["red", "blue"])

    def test_decoded_non_finite_rejected(self):
        with pytest.raises(PayloadError, match="non-finite"):
            to_struct({"ratio": float("nan")})

    def test_invalid_utf8(self):
        with pytest.raises(PayloadError, match="UTF-8"):
            to_struct(b'{"name": "\xff"}')

    def test_malformed_json(self):
        with pytest.raises(PayloadError, match="not valid JSON"):
            to_struct('{"phase": ')

    @pytest.mark.parametrize("raw", ["[1, 2]", '"text"', "42", "null"])
    def test_non_object_rejected(self, raw):
        with pytest.raises(PayloadError, match="JSON object"):
            to_struct(raw)

    @pytest.mark.parametrize("raw", ['{"x": NaN}', '{"x": Infinity}'])
    def test_non_finite_rejected(self, raw):
        with pytest.raises(PayloadError):
            to_struct(raw)

    def test_nesting_limit(self):
        nested = {}
        for _ in range(MAX_DEPTH + 1):
            nested = {"n": nested}
        with pytest.raises(PayloadError, match="nesting"):
            to_struct(json.dumps(nested))

    def test_inexact_integer_rejected(self):
        with pytest.raises(PayloadError, match="exactly"):
            to_struct(json.dumps({"big": 2**60}))


class TestInstanceProjection:
    def test_fields(self):
        players = [Player("p2", '{"k": 1}'), Player("p1", "")]
        msg = instance_to_proto(_make_instance(players=players))

        assert msg.id == "abc"
        assert msg.name == "game-7"
        assert msg.ip == "10.0.0.5"
        assert msg.state == api_state("Running")
        assert from_struct(msg.metadata.state) == {"phase": "match"}
        assert [p.id for p in msg.metadata.players] == ["p2", "p1"]
        assert from_struct(msg.metadata.players[0].metadata) == {"k": 1}

    def test_decoded_player_metadata(self):
        msg = instance_to_proto(_make_instance(metadata_state={"phase": "match"}, players=[Player("p1", {"team": "red"})]))
        assert from_struct(msg.metadata.state) == {"phase": "match"}
        assert from_struct(msg.metadata.players[0].metadata) == {"team": "red"}

    def test_state_enum(self):
        values = {api_state(s) for s in ("Initializing", "Running", "Ending")}
        assert len(values) == 3
        assert api_state("") == 0
        assert api_state("Bogus") == 0

    def test_bad_player_metadata_fails(self):
        with pytest.raises(PayloadError):
            instance_to_proto(_make_instance(players=[Player("p1", "{oops")]))

    def test_serializes(self):
        msg = instance_to_proto(_make_instance())
        assert InstanceProto.FromString(msg.SerializeToString()) == msg


# ── Emitter ──


class TestEmitter:
    def test_started_envelope(self):
        emitter, bus = _emitter()
        message_id = emitter.instance_created(_make_instance(state="Initializing"))

        topic, key, headers, value = _sent(bus)
        assert topic == "instances"
        assert headers["ce_type"] == TYPE_STARTED.encode()
        assert headers["ce_source"] == b"//controller/test"
        assert headers["ce_specversion"] == b"1.0"
        assert headers["ce_id"].decode() == message_id
        assert "ce_time" in headers
        assert headers["content-type"] == CONTENT_TYPE.encode()
        assert InstanceStartedEvent.FromString(value).instance.id == "abc"

    def test_ended_type(self):
        emitter, bus = _emitter()
        emitter.instance_ended(_make_instance())
        assert _sent(bus)[2]["ce_type"] == TYPE_ENDED.encode()

    def test_message_ids_unique(self):
        emitter, bus = _emitter()
        ids = {emitter.instance_created(_make_instance()) for _ in range(3)}
        assert len(ids) == 3

    def test_default_key_is_instance_id(self):
        emitter, bus = _emitter()
        emitter.instance_created(_make_instance())
        assert _sent(bus)[1] == "abc"

    def test_message_partition_key(self):
        emitter, bus = _emitter(partition_key=PartitionKey.MESSAGE)
        message_id = emitter.instance_ended(_make_instance())
        assert _sent(bus)[1] == message_id

    def test_partition_key_from_string(self):
        emitter, bus = _emitter(partition_key="message")
        message_id = emitter.instance_ended(_make_instance())
        assert _sent(bus)[1] == message_id

    def test_state_changed_payload(self):
        emitter, bus = _emitter()
        emitter.instance_state_changed(_make_instance(), '{"phase": "lobby"}', b'{"phase": "match"}')

        headers, value = _sent(bus)[2], _sent(bus)[3]
        assert headers["ce_type"] == TYPE_STATE_CHANGED.encode()
        event = InstanceStateChangedEvent.FromString(value)
        assert from_struct(event.old_state) == {"phase": "lobby"}
        assert from_struct(event.new_state) == {"phase": "match"}
        assert event.instance.name == "game-7"

    def test_malformed_state_fails_before_send(self):
        emitter, bus = _emitter()
        with pytest.raises(PayloadError):
            emitter.instance_state_changed(_make_instance(), "{bad", "{}")
        bus.send.assert_not_called()

    def test_delivery_error_propagates(self):
        emitter, bus = _emitter()
        bus.send.side_effect = DeliveryError("undelivered")
        with pytest.raises(DeliveryError):
            emitter.instance_created(_make_instance())


# ── Kafka bus ──


class TestKafkaBus:
    def _producer(self, err=None, deliver=True, queued=0):
        producer = MagicMock()
        callbacks = []

        def produce(topic, value=None, key=None, headers=None, on_delivery=None):
            callbacks.append(on_delivery)

        def flush(timeout):
            if deliver:
                for cb in callbacks:
                    cb(err, MagicMock())
                callbacks.clear()
            return queued

        producer.produce.side_effect = produce
        producer.flush.side_effect = flush
        return producer

    def test_delivered(self):
        producer = self._producer()
        KafkaBus(producer).send("instances", "abc", {"ce_id": b"1"}, b"payload")

        kwargs = producer.produce.call_args[1]
        assert producer.produce.call_args[0] == ("instances",)
        assert kwargs["key"] == "abc"
        assert kwargs["value"] == b"payload"
        assert kwargs["headers"] == [("ce_id", b"1")]

    def test_undelivered(self):
        bus = KafkaBus(self._producer(err="Broker: Message timed out"))
        with pytest.raises(DeliveryError, match="timed out"):
            bus.send("instances", "abc", {}, b"payload")

    def test_flush_timeout(self):
        bus = KafkaBus(self._producer(deliver=False, queued=1), flush_timeout=0.1)
        with pytest.raises(DeliveryError, match="not delivered"):
            bus.send("instances", "abc", {}, b"payload")

    @pytest.mark.parametrize("exc", [BufferError("queue full"), KafkaException("unknown topic")])
    def test_produce_failure(self, exc):
        producer = MagicMock()
        producer.produce.side_effect = exc
        with pytest.raises(DeliveryError):
            KafkaBus(producer).send("instances", "abc", {}, b"payload")
        producer.flush.assert_not_called()

    def test_from_config(self):
        config = MagicMock(kafka_brokers="kafka:9092", client_id="ic", flush_timeout_sec=3.0)
        with pytest.MonkeyPatch.context() as mp:
            producer_cls = MagicMock()
            mp.setattr("instance_controller.bus.Producer", producer_cls)
            bus = KafkaBus.from_config(config)
        conf = producer_cls.call_args[0][0]
        assert conf["bootstrap.servers"] == "kafka:9092"
        assert conf["client.id"] == "ic"
        assert bus._flush_timeout == 3.0
