from __future__ import annotations

import json

import pytest
from fakes import FakeArticleFetcher, FakeModelClient, graph_payload, node
from fastapi.testclient import TestClient

from dispatch_api.app.errors import (
    ModelAuthError,
    ModelError,
    ModelRateLimitedError,
    ModelUnavailableError,
    ModelUnsupportedMediaError,
)
from dispatch_api.app.memory import InMemoryDispatchStorage
from dispatch_api.main import create_app

USER = {"X-User-Id": "user-1"}


def _content_impact_nodes() -> list[dict]:
    personas = [node(f"brainNode-{i}", "brainNode", f"Persona {i}") for i in range(12)]
    video = node(
        "contentUrl-1",
        "contentUrlInputNode",
        "Video",
        url="https://www.youtube.com/watch?v=dQw4w9WgXcQ",
    )
    return [*personas, video]


def _research_nodes() -> list[dict]:
    return [node("n1", "dataNode", "EEG recordings"), node("n2", "analysis", "Spectral power")]


def test_empty_nodes_is_rejected(client: TestClient, model_client: FakeModelClient) -> None:
    response = client.post("/workflows/run", json=graph_payload([]), headers=USER)
    assert response.status_code == 400
    assert response.json()["message"] == "No nodes provided in workflow"
    assert model_client.calls == []


def test_content_impact_run_sends_all_node_ids_and_video(
    client: TestClient, model_client: FakeModelClient
) -> None:
    nodes = _content_impact_nodes()
    response = client.post(
        "/workflows/run",
        json=graph_payload(nodes, workflowId="wf-1", workflowName="Teaser test"),
        headers=USER,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["metadata"]["archetype"] == "content_impact"
    assert body["metadata"]["usedMedia"] is True
    assert body["metadata"]["fallbackReason"] is None
    assert body["metadata"]["nodesProcessed"] == 13

    prompt = model_client.calls[0]["text"]
    for item in nodes:
        assert json.dumps(item["id"]) in prompt
    assert model_client.calls[0]["media"].uri == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def test_fenced_json_answer_is_returned_and_persisted(
    client: TestClient, model_client: FakeModelClient, storage: InMemoryDispatchStorage
) -> None:
    model_client.responses = [
        'Sure! ```json\n{"summary":"ok","perNodeResults":[{"nodeId":"n1","insight":"alpha"}]}\n```'
    ]
    response = client.post(
        "/workflows/run", json=graph_payload(_research_nodes(), workflowId="wf-2"), headers=USER
    )
    body = response.json()
    assert body["result"] == "ok"
    assert body["analysis"] == "ok"
    assert body["perNodeResults"] == [{"nodeId": "n1", "insight": "alpha"}]
    assert body["creditsRefresh"] is True

    execution_id = body["metadata"]["executionId"]
    execution = storage.get_execution(execution_id)
    assert execution is not None
    assert execution.user_id == "user-1"
    assert execution.status == "completed"
    assert execution.nodes_executed == 2

    stored = client.get(f"/executions/{execution_id}/results").json()
    assert [item["node_id"] for item in stored["results"]] == ["n1"]
    assert stored["results"][0]["node_name"] == "EEG recordings"
    assert stored["results"][0]["matched"] is True


def test_plain_prose_answer_becomes_the_result(
    client: TestClient, model_client: FakeModelClient
) -> None:
    model_client.responses = ["Just prose, no JSON here."]
    body = client.post("/workflows/run", json=graph_payload(_research_nodes())).json()
    assert body["result"] == "Just prose, no JSON here."
    assert body["perNodeResults"] == []


def test_free_user_with_three_runs_is_denied(
    client: TestClient, model_client: FakeModelClient
) -> None:
    for _ in range(3):
        response = client.post(
            "/workflows/run", json=graph_payload(_research_nodes()), headers=USER
        )
        assert response.status_code == 200

    response = client.post("/workflows/run", json=graph_payload(_research_nodes()), headers=USER)
    assert response.status_code == 402
    assert response.json()["remaining"] == 0
    assert response.json()["requiresUpgrade"] is True
    assert len(model_client.calls) == 3


def test_anonymous_runs_are_not_metered(
    client: TestClient, storage: InMemoryDispatchStorage
) -> None:
    for _ in range(5):
        response = client.post("/workflows/run", json=graph_payload(_research_nodes()))
        assert response.status_code == 200
        assert response.json()["creditsRefresh"] is False
    assert len(storage.list_executions()) == 5
    assert storage.credit_transactions == []


def test_credits_are_charged_per_node(client: TestClient, storage: InMemoryDispatchStorage) -> None:
    client.post("/workflows/run", json=graph_payload(_content_impact_nodes()), headers=USER)
    assert storage.credit_balance("user-1") == 50 - 13


def test_unmatched_node_ids_are_flagged(
    client: TestClient, model_client: FakeModelClient, storage: InMemoryDispatchStorage
) -> None:
    model_client.responses = [
        json.dumps(
            {
                "summary": "s",
                "perNodeResults": [
                    {"nodeId": "n1"},
                    {"nodeId": "brainNode-99", "nodeName": "Ghost"},
                ],
            }
        )
    ]
    body = client.post("/workflows/run", json=graph_payload(_research_nodes()), headers=USER).json()
    assert body["metadata"]["unmatchedNodeIds"] == ["brainNode-99"]

    results = storage.list_node_results(body["metadata"]["executionId"])
    assert {item.node_id: item.matched for item in results} == {"n1": True, "brainNode-99": False}


@pytest.mark.parametrize(
    ("exc", "status", "error"),
    [
        (ModelAuthError("API_KEY_INVALID"), 401, "Invalid API key"),
        (ModelRateLimitedError("quota"), 429, "Rate limit exceeded"),
        (ModelUnavailableError("timeout"), 503, "AI service unavailable"),
        (ModelError("boom"), 500, "Workflow execution failed"),
    ],
)
def test_model_failures_map_to_status_codes(
    client: TestClient,
    model_client: FakeModelClient,
    storage: InMemoryDispatchStorage,
    exc: ModelError,
    status: int,
    error: str,
) -> None:
    model_client.responses = [exc]
    response = client.post("/workflows/run", json=graph_payload(_research_nodes()), headers=USER)
    assert response.status_code == status
    assert response.json()["error"] == error
    assert storage.list_executions() == []


def test_failed_run_gives_the_quota_slot_back(
    client: TestClient, model_client: FakeModelClient
) -> None:
    model_client.responses = [ModelUnavailableError("down")]
    response = client.post("/workflows/run", json=graph_payload(_research_nodes()), headers=USER)
    assert response.status_code == 503
    assert client.get("/quota", headers=USER).json()["remaining"] == 3


def test_video_fallback_to_text_when_media_is_rejected(
    client: TestClient, model_client: FakeModelClient
) -> None:
    model_client.responses = [ModelUnsupportedMediaError("no video"), '{"summary": "text only"}']
    response = client.post(
        "/workflows/run", json=graph_payload(_content_impact_nodes()), headers=USER
    )
    body = response.json()
    assert body["result"] == "text only"
    assert body["metadata"]["usedMedia"] is False
    assert body["metadata"]["fallbackReason"].startswith("ModelUnsupportedMediaError")
    assert [call["media"] is None for call in model_client.calls] == [False, True]


def test_media_bias_run_fetches_article_text(
    client: TestClient, model_client: FakeModelClient, article_fetcher: FakeArticleFetcher
) -> None:
    nodes = [
        node("art", "newsArticleNode", "Budget vote", url="https://news.example/budget"),
        node("m1", "preprocessingNode", "Bias Detector"),
        node("m2", "analysisNode", "Fact Checker"),
    ]
    body = client.post("/workflows/run", json=graph_payload(nodes)).json()
    assert body["metadata"]["archetype"] == "media_bias"
    assert article_fetcher.urls == ["https://news.example/budget"]
    assert "Article body about local elections." in model_client.calls[0]["text"]
    assert model_client.calls[0]["media"] is None


def test_persistence_failure_does_not_fail_the_run(
    client: TestClient, storage: InMemoryDispatchStorage, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken(**_kwargs: object) -> None:
        raise RuntimeError("db down")

    monkeypatch.setattr(storage, "create_execution", broken)
    response = client.post("/workflows/run", json=graph_payload(_research_nodes()), headers=USER)
    assert response.status_code == 200
    assert response.json()["metadata"]["executionId"] is None


def test_backend_not_configured_returns_503(settings, storage: InMemoryDispatchStorage) -> None:
    app = create_app(
        storage=storage,
        settings_override=settings,
        model_client=None,
        content_fetcher=FakeArticleFetcher(),
    )
    with TestClient(app) as test_client:
        status = test_client.get("/workflows/run").json()
        assert status["status"] == "offline"

        response = test_client.post(
            "/workflows/run", json=graph_payload(_research_nodes()), headers=USER
        )
        assert response.status_code == 503
        assert response.json()["mode"] == "offline"
        assert test_client.get("/quota", headers=USER).json()["remaining"] == 3


def test_backend_status_ready(client: TestClient) -> None:
    body = client.get("/workflows/run").json()
    assert body["status"] == "ready"
    assert "timestamp" in body


def test_unknown_execution_results_is_404(client: TestClient) -> None:
    assert client.get("/executions/does-not-exist/results").status_code == 404


def test_quota_endpoint_requires_user(client: TestClient) -> None:
    assert client.get("/quota").status_code == 401
    body = client.get("/quota", headers=USER).json()
    assert body == {
        "allowed": True,
        "remaining": 3,
        "limit": 3,
        "used": 0,
        "tier": "free",
        "reason": None,
    }


def test_unexpected_failure_before_answer_is_json_500_and_frees_slot(
    client: TestClient, article_fetcher: FakeArticleFetcher, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken(url: str) -> str:
        raise RuntimeError("extractor crashed")

    monkeypatch.setattr(article_fetcher, "fetch_article_text", broken)
    nodes = [
        node("art", "newsArticleNode", "Budget vote", url="https://news.example/budget"),
        node("m1", "preprocessingNode", "Bias Detector"),
        node("m2", "analysisNode", "Fact Checker"),
    ]
    response = client.post("/workflows/run", json=graph_payload(nodes), headers=USER)
    assert response.status_code == 500
    assert response.json() == {
        "error": "Workflow execution failed",
        "message": "extractor crashed",
    }
    assert client.get("/quota", headers=USER).json()["remaining"] == 3


def test_more_results_than_nodes_is_logged(
    client: TestClient, model_client: FakeModelClient, caplog: pytest.LogCaptureFixture
) -> None:
    model_client.responses = [
        json.dumps(
            {
                "summary": "s",
                "perNodeResults": [{"nodeId": "n1"}, {"nodeId": "n2"}, {"nodeId": "n1"}],
            }
        )
    ]
    with caplog.at_level("WARNING", logger="dispatch_api.app.dispatcher"):
        response = client.post(
            "/workflows/run", json=graph_payload(_research_nodes()), headers=USER
        )
    body = response.json()
    assert response.status_code == 200
    assert len(body["perNodeResults"]) == 3
    assert body["metadata"]["nodesProcessed"] == 2
    assert "event=excess_node_results results=3 nodes=2" in caplog.text
