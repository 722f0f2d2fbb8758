"""Tests for instance_controller/resources.py"""

from instance_controller.resources import ID_ANNOTATION, Instance, Workload, raw_json


def _obj():
    return {
        "apiVersion": "instance.cow.network/v1",
        "kind": "Instance",
        "metadata": {
            "name": "game-7",
            "namespace": "games",
            "uid": "uid-1",
            "resourceVersion": "12",
            "labels": {"app": "game"},
            "annotations": {ID_ANNOTATION: "abc"},
        },
        "spec": {"template": {"containers": [{"name": "server", "image": "game:1.0"}]}},
        "status": {
            "state": "Running",
            "id": "abc",
            "ip": "10.0.0.5",
            "metadata": {
                "state": '{"phase": "match"}',
                "players": [
                    {"id": "p2", "metadata": '{"team": "blue"}'},
                    {"id": "p1", "metadata": {"team": "red"}},
                    {"id": "p2", "metadata": '{"team": "dup"}'},
                ],
            },
        },
    }


class TestInstance:
    def test_from_dict(self):
        instance = Instance.from_dict(_obj())
        assert instance.key == "games/game-7"
        assert instance.status.state == "Running"
        assert instance.identity == "abc"
        assert instance.template["containers"][0]["image"] == "game:1.0"

    def test_players_keep_order_and_unique_ids(self):
        players = Instance.from_dict(_obj()).status.metadata.players
        assert [p.id for p in players] == ["p2", "p1"]
        assert players[0].metadata == '{"team": "blue"}'
        assert players[1].metadata == {"team": "red"}

    def test_round_trip(self):
        obj = Instance.from_dict(_obj()).to_dict()
        again = Instance.from_dict(obj).to_dict()
        assert obj == again
        assert obj["metadata"]["resourceVersion"] == "12"

    def test_opaque_values_written_back_unchanged(self):
        obj = _obj()
        obj["status"]["metadata"] = {
            "state": {"phase": "match", "round": 2},
            "players": [{"id": "p1", "metadata": {"team": "red"}}, {"id": "p2"}],
        }

        out = Instance.from_dict(obj).to_dict()

        assert out["status"]["metadata"]["state"] == {"phase": "match", "round": 2}
        assert out["status"]["metadata"]["players"][0]["metadata"] == {"team": "red"}
        assert "metadata" not in out["status"]["metadata"]["players"][1]

    def test_foreign_fields_survive(self):
        obj = _obj()
        obj["metadata"]["finalizers"] = ["matchmaker.cow.network/cleanup"]
        obj["metadata"]["ownerReferences"] = [{"apiVersion": "v1", "kind": "ConfigMap", "name": "lobby"}]
        obj["spec"]["region"] = "eu-west"
        obj["status"]["conditions"] = [{"type": "Ready", "status": "True"}]

        instance = Instance.from_dict(obj)
        instance.status.ip = "10.0.0.6"
        instance.annotations["extra"] = "1"
        out = instance.to_dict()

        assert out["metadata"]["finalizers"] == ["matchmaker.cow.network/cleanup"]
        assert out["metadata"]["ownerReferences"][0]["name"] == "lobby"
        assert out["metadata"]["annotations"]["extra"] == "1"
        assert out["spec"]["region"] == "eu-west"
        assert out["status"]["conditions"] == [{"type": "Ready", "status": "True"}]
        assert out["status"]["ip"] == "10.0.0.6"
        # the source object is left alone
        assert obj["status"]["ip"] == "10.0.0.5"

    def test_built_instance_has_full_body(self):
        out = Instance(name="game-7", namespace="games", template={"containers": []}).to_dict()
        assert out["apiVersion"] == "instance.cow.network/v1"
        assert out["spec"] == {"template": {"containers": []}}
        assert out["status"]["metadata"] == {"players": []}

    def test_empty_status(self):
        obj = _obj()
        del obj["status"]
        instance = Instance.from_dict(obj)
        assert instance.status.state == ""
        assert instance.status.metadata.players == []

    def test_identity_falls_back_to_annotation(self):
        obj = _obj()
        obj["status"] = {}
        assert Instance.from_dict(obj).identity == "abc"

    def test_snapshot_is_independent(self):
        instance = Instance.from_dict(_obj())
        snap = instance.snapshot()
        instance.status.ip = "10.0.0.6"
        assert snap.status.ip == "10.0.0.5"


class TestWorkload:
    def test_owner(self):
        workload = Workload.from_dict({
            "metadata": {
                "name": "abc",
                "ownerReferences": [
                    {"apiVersion": "apps/v1", "kind": "ReplicaSet", "name": "rs"},
                    {"apiVersion": "instance.cow.network/v1", "kind": "Instance", "name": "game-7"},
                ],
            },
            "status": {"podIP": "10.0.0.5"},
        })
        assert workload.owner_instance() == "game-7"
        assert workload.ip == "10.0.0.5"

    def test_no_owner(self):
        assert Workload.from_dict({"metadata": {"name": "abc"}}).owner_instance() is None


class TestRawJson:
    def test_text_kept(self):
        assert raw_json('{"b": 1,  "a": 2}') == '{"b": 1,  "a": 2}'

    def test_decoded_value_encoded(self):
        assert raw_json({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'

    def test_none(self):
        assert raw_json(None) == ""
