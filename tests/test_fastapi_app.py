import pytest
from fastapi.testclient import TestClient

import fastapi_app
from fastapi_app import app, get_cluster_client, get_manager
from kube_types import ObjectMeta, Replacement, ReplacementSpec
from manager import ControllerManager
from replacement_controller import ReplacementController
from rollout_controller import ROLLOUT_LABEL, RolloutController


@pytest.fixture
def api(cluster, pipeline, clock):
    manager = ControllerManager(
        cluster,
        RolloutController(cluster),
        ReplacementController(cluster, pipeline),
        clock=clock,
    )
    app.dependency_overrides[get_cluster_client] = lambda: cluster
    app.dependency_overrides[get_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health():
    client = TestClient(app)
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/api/health").json()["status"] == "healthy"


def test_no_cluster_client_is_503(monkeypatch):
    monkeypatch.setattr(fastapi_app, "orchestrator_client", None)
    response = TestClient(app).get("/api/rollouts")
    assert response.status_code == 503


def test_create_and_get_rollout(api):
    response = api.post(
        "/api/rollouts",
        json={
            "name": "upgrade",
            "nodeNames": [{"name": "n1", "priority": 5}],
            "nodeSelectors": [{"labelSelector": {"matchLabels": {"role": "worker"}}, "priority": 1}],
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["kind"] == "NodeRollout"
    assert body["metadata"]["name"] == "upgrade"
    assert body["spec"]["nodeNames"] == [{"name": "n1", "priority": 5}]
    assert body["status"]["phase"] == "New"

    fetched = api.get("/api/rollouts/upgrade").json()
    assert fetched["metadata"]["uid"] == body["metadata"]["uid"]
    assert [r["metadata"]["name"] for r in api.get("/api/rollouts").json()] == ["upgrade"]


def test_empty_rollout_is_rejected(api):
    assert api.post("/api/rollouts", json={"name": "empty"}).status_code == 400


def test_duplicate_rollout_is_409(api):
    plan = {"name": "upgrade", "nodeNames": [{"name": "n1"}]}
    assert api.post("/api/rollouts", json=plan).status_code == 201
    assert api.post("/api/rollouts", json=plan).status_code == 409


def test_missing_rollout_is_404(api):
    assert api.get("/api/rollouts/nope").status_code == 404
    assert api.delete("/api/rollouts/nope").status_code == 404


def test_delete_rollout(api, cluster):
    api.post("/api/rollouts", json={"name": "upgrade", "nodeNames": [{"name": "n1"}]})
    response = api.delete("/api/rollouts/upgrade")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert cluster.list_rollouts() == []


def test_list_replacements_filtered_by_rollout(api, cluster):
    for name, rollout in (("a-1", "first"), ("b-1", "second")):
        cluster.create_replacement(
            Replacement(
                metadata=ObjectMeta(name=name, labels={ROLLOUT_LABEL: rollout}),
                spec=ReplacementSpec(node_name=name, node_uid=f"uid-{name}"),
            )
        )

    assert len(api.get("/api/replacements").json()) == 2
    filtered = api.get("/api/replacements", params={"rollout": "second"}).json()
    assert [r["metadata"]["name"] for r in filtered] == ["b-1"]
    assert filtered[0]["spec"] == {"nodeName": "b-1", "nodeUID": "uid-b-1", "priority": 0}


def test_reconcile_runs_a_pass(api, cluster):
    cluster.add_node("n1")
    api.post("/api/rollouts", json={"name": "upgrade", "nodeNames": [{"name": "n1"}]})

    response = api.post("/api/reconcile")

    assert response.status_code == 200
    assert response.json() == {"success": True, "reconciled": {"NodeRollout": 1, "NodeReplacement": 1}}
    [replacement] = api.get("/api/replacements", params={"rollout": "upgrade"}).json()
    assert replacement["status"]["phase"] == "Completed"
    assert cluster.get_node("n1").unschedulable


@pytest.mark.parametrize(
    "selector",
    [
        {"matchExpressions": [{"key": "cpu", "operator": "Gt", "values": ["8"]}]},
        {"matchExpressions": [{"operator": "Exists"}]},
    ],
)
def test_invalid_selector_is_422(api, cluster, selector):
    response = api.post(
        "/api/rollouts",
        json={"name": "bad", "nodeSelectors": [{"labelSelector": selector, "priority": 1}]},
    )
    assert response.status_code == 422
    assert cluster.list_rollouts() == []


def test_reconcile_while_a_pass_is_running_is_409(api):
    manager = app.dependency_overrides[get_manager]()

    with manager._pass_lock:
        response = api.post("/api/reconcile")

    assert response.status_code == 409
    assert response.json()["detail"] == "reconcile already running"
    assert api.post("/api/reconcile").status_code == 200
