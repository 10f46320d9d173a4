import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from forge3d.models import GeneratedModel

GLB = "https://assets.meshy.ai/tasks/{}/model.glb"

@pytest.fixture
def save_model(client: TestClient):
    def _save(headers, task_id, prompt="a red car", status="COMPLETED", model_url=None, credits_cost=5):
        body = {
            "taskId": task_id,
            "serviceType": "text-to-3d-preview",
            "creditsCost": credits_cost,
            "prompt": prompt,
            "modelUrl": model_url if model_url is not None else GLB.format(task_id),
            "thumbnailUrl": f"https://assets.meshy.ai/tasks/{task_id}/preview.png",
            "status": status,
        }
        resp = client.post("/models", json=body, headers=headers)
        assert resp.status_code == 200, resp.text
        return resp.json()
    return _save

class TestModelRecords:
    def test_requires_session(self, client: TestClient):
        assert client.get("/models").status_code == 401

    def test_save_and_list(self, client: TestClient, auth_headers, save_model, user_id):
        save_model(auth_headers, "task-1", prompt="a chair")
        save_model(auth_headers, "task-2", prompt="a table")

        resp = client.get("/models", headers=auth_headers)

        body = resp.json()
        assert body["total"] == 2
        assert [m["id"] for m in body["models"]] == ["task-2", "task-1"]
        assert body["models"][0]["userId"] == user_id
        assert body["models"][0]["status"] == "COMPLETED"

    def test_list_pagination(self, client: TestClient, auth_headers, save_model):
        for i in range(3):
            save_model(auth_headers, f"task-{i}")

        body = client.get("/models", params={"limit": 1, "offset": 1}, headers=auth_headers).json()

        assert body["total"] == 3
        assert [m["id"] for m in body["models"]] == ["task-1"]

    def test_list_only_own_models(self, client: TestClient, auth_headers, make_headers, save_model):
        save_model(make_headers("other-user"), "task-other")
        assert client.get("/models", headers=auth_headers).json()["total"] == 0

    def test_save_is_an_upsert(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1", status="PENDING", model_url="")
        updated = save_model(auth_headers, "task-1", status="COMPLETED")

        assert updated["status"] == "COMPLETED"
        assert client.get("/models", headers=auth_headers).json()["total"] == 1

    def test_save_status_defaults_to_completed(self, client: TestClient, auth_headers):
        resp = client.post(
            "/models",
            json={"taskId": "task-9", "serviceType": "image-generation", "creditsCost": 5},
            headers=auth_headers,
        )
        assert resp.json()["status"] == "COMPLETED"

    def test_save_rejects_another_users_task(self, client: TestClient, auth_headers, make_headers, save_model):
        save_model(make_headers("other-user"), "task-1")

        resp = client.post(
            "/models",
            json={"taskId": "task-1", "serviceType": "text-to-3d-preview", "creditsCost": 0},
            headers=auth_headers,
        )
        assert resp.status_code == 404

    @pytest.mark.parametrize("body", [
        {"serviceType": "text-to-3d-preview", "creditsCost": 5},
        {"taskId": "t", "serviceType": "text-to-3d-preview", "creditsCost": -1},
        {"taskId": "t", "serviceType": "text-to-3d-preview", "creditsCost": 5, "status": "DONE"},
    ])
    def test_save_validation(self, client: TestClient, auth_headers, body):
        assert client.post("/models", json=body, headers=auth_headers).status_code == 400

    def test_delete(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1")

        resp = client.delete("/models", params={"id": "task-1"}, headers=auth_headers)

        assert resp.json() == {"success": True}
        assert client.get("/models", headers=auth_headers).json()["total"] == 0

    def test_delete_not_owned_reads_as_not_found(self, client: TestClient, auth_headers, make_headers, save_model):
        save_model(make_headers("other-user"), "task-1")

        missing = client.delete("/models", params={"id": "nope"}, headers=auth_headers)
        foreign = client.delete("/models", params={"id": "task-1"}, headers=auth_headers)

        assert missing.status_code == foreign.status_code == 404
        assert missing.json() == foreign.json()

class TestRating:
    def test_rate_model(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1")

        resp = client.put("/models/task-1/rating", json={"rating": 4, "comment": "nice"}, headers=auth_headers)

        assert resp.status_code == 200
        assert resp.json()["rating"] == 4
        assert resp.json()["comment"] == "nice"

    def test_failed_models_can_be_rated(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1", status="FAILED", model_url="")
        resp = client.put("/models/task-1/rating", json={"rating": 1}, headers=auth_headers)
        assert resp.status_code == 200

    @pytest.mark.parametrize("rating", [0, 6, 3.5, "4", True])
    def test_rating_out_of_range(self, client: TestClient, auth_headers, save_model, rating):
        save_model(auth_headers, "task-1")
        resp = client.put("/models/task-1/rating", json={"rating": rating}, headers=auth_headers)
        assert resp.status_code == 400

    def test_rating_not_owned(self, client: TestClient, auth_headers, make_headers, save_model):
        save_model(make_headers("other-user"), "task-1")
        resp = client.put("/models/task-1/rating", json={"rating": 5}, headers=auth_headers)
        assert resp.status_code == 404

class TestReuse:
    def test_reuse_then_duplicate_conflict(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1", prompt="a red car")

        first = client.post("/models/reuse", json={"originalModelId": "task-1"}, headers=auth_headers)
        second = client.post("/models/reuse", json={"originalModelId": "task-1"}, headers=auth_headers)

        assert first.status_code == 200
        reused = first.json()["reusedModel"]
        assert reused["creditsCost"] == 0
        assert reused["status"] == "COMPLETED"
        assert reused["modelUrl"] == GLB.format("task-1")
        assert reused["prompt"] == "a red car"
        assert reused["id"] != "task-1"
        assert first.json()["originalModelId"] == "task-1"

        assert second.status_code == 409
        assert second.json()["existingModel"]["id"] == reused["id"]

    def test_reuse_with_new_prompt(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1", prompt="a red car")

        resp = client.post(
            "/models/reuse",
            json={"originalModelId": "task-1", "newPrompt": "a crimson car"},
            headers=auth_headers,
        )

        assert resp.json()["reusedModel"]["prompt"] == "a crimson car"

    def test_reuse_costs_no_credits(self, client: TestClient, auth_headers, save_model, user_id):
        client.post("/credits/initialize", json={}, headers=auth_headers)
        save_model(auth_headers, "task-1")

        client.post("/models/reuse", json={"originalModelId": "task-1"}, headers=auth_headers)

        assert client.get("/credits/balance", params={"userId": user_id}).json()["credits"] == 45

    def test_reuse_requires_completed_model(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1", status="PENDING")
        resp = client.post("/models/reuse", json={"originalModelId": "task-1"}, headers=auth_headers)
        assert resp.status_code == 400

    def test_reuse_of_foreign_model_is_not_found(self, client: TestClient, auth_headers, make_headers, save_model):
        save_model(make_headers("other-user"), "task-1")
        resp = client.post("/models/reuse", json={"originalModelId": "task-1"}, headers=auth_headers)
        assert resp.status_code == 404

class TestSimilar:
    def test_similar_models_ranked(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1", prompt="a red car")
        save_model(auth_headers, "task-2", prompt="a red sports car")
        save_model(auth_headers, "task-3", prompt="medieval castle")
        save_model(auth_headers, "task-4", prompt="a red car", status="PENDING")

        resp = client.post("/models/similar", json={"prompt": "A red car"}, headers=auth_headers)

        body = resp.json()
        assert body["totalChecked"] == 3
        assert body["exactMatch"] is True
        assert body["searchPrompt"] == "A red car"
        assert body["threshold"] == 0.3
        assert [m["id"] for m in body["similarModels"]] == ["task-1", "task-2"]
        assert body["similarModels"][0]["similarity"] == 1.0
        assert body["similarModels"][0]["isOwnModel"] is True

    def test_no_exact_match(self, client: TestClient, auth_headers, save_model):
        save_model(auth_headers, "task-1", prompt="a red sports car")

        body = client.post("/models/similar", json={"prompt": "a red car"}, headers=auth_headers).json()

        assert body["exactMatch"] is False
        assert len(body["similarModels"]) == 1

    def test_limit_and_threshold(self, client: TestClient, auth_headers, save_model):
        for i in range(4):
            save_model(auth_headers, f"task-{i}", prompt="a red car", model_url=GLB.format(i))

        body = client.post(
            "/models/similar",
            json={"prompt": "a red car", "limit": 2, "threshold": 0.99},
            headers=auth_headers,
        ).json()

        assert len(body["similarModels"]) == 2

    def test_other_users_models_are_not_searched(self, client: TestClient, auth_headers, make_headers, save_model):
        save_model(make_headers("other-user"), "task-1", prompt="a red car")
        body = client.post("/models/similar", json={"prompt": "a red car"}, headers=auth_headers).json()
        assert body["similarModels"] == []
        assert body["totalChecked"] == 0

    def test_prompt_required(self, client: TestClient, auth_headers):
        assert client.post("/models/similar", json={"prompt": ""}, headers=auth_headers).status_code == 400
