"""HTTP surface tests via FastAPI's TestClient."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from cloudcode.api import create_app
from tests.conftest import make_user


@pytest.fixture
def client(cloud):
    return TestClient(create_app(cloud))


class TestFunctions:
    def test_success(self, cloud, client):
        cloud.define("hello", lambda req, res: res.success(f"Hello {req.params['name']}"))
        resp = client.post("/functions/hello", json={"name": "Ada"})
        assert resp.status_code == 200
        assert resp.json() == {"result": "Hello Ada"}

    def test_no_body(self, cloud, client):
        cloud.define("ping", lambda req, res: res.success("pong"))
        resp = client.post("/functions/ping")
        assert resp.status_code == 200
        assert resp.json() == {"result": "pong"}

    def test_unknown_function(self, client):
        resp = client.post("/functions/missing", json={})
        assert resp.status_code == 404
        assert resp.json() == {"code": 101, "error": "Invalid function: 'missing'"}

    def test_handler_error(self, cloud, client):
        cloud.define("fails", lambda req, res: res.error("nope"))
        resp = client.post("/functions/fails", json={})
        assert resp.status_code == 400
        assert resp.json() == {"code": 141, "error": "nope"}

    def test_timeout(self, cloud, client, release):
        cloud.define("stuck", lambda req, res: release.wait(5))
        resp = client.post("/functions/stuck", json={})
        assert resp.status_code == 504
        assert resp.json()["code"] == 124

    def test_session_header(self, cloud, client):
        make_user(cloud.store, "ada", "r:tok")
        cloud.define("whoami", lambda req, res: res.success(req.user["username"]))
        resp = client.post("/functions/whoami", json={}, headers={"X-Session-Token": "r:tok"})
        assert resp.json() == {"result": "ada"}

    def test_bad_session_header(self, cloud, client):
        cloud.define("whoami", lambda req, res: res.success(None))
        resp = client.post("/functions/whoami", json={}, headers={"X-Session-Token": "r:bogus"})
        assert resp.status_code == 400
        assert resp.json()["code"] == 209


class TestClasses:
    def test_create_and_get(self, client):
        resp = client.post("/classes/Review", json={"movie": "The Matrix", "stars": 5})
        assert resp.status_code == 201
        created = resp.json()["result"]
        assert created["className"] == "Review"
        assert created["stars"] == 5
        assert "createdAt" in created

        resp = client.get(f"/classes/Review/{created['objectId']}")
        assert resp.status_code == 200
        assert resp.json()["result"]["movie"] == "The Matrix"

    def test_reserved_keys_ignored(self, client):
        resp = client.post("/classes/Review", json={"objectId": "forged", "stars": 1})
        assert resp.json()["result"]["objectId"] != "forged"

    def test_before_save_rejection(self, cloud, client):
        @cloud.before_save("Review")
        def check(request, response):
            if request.object["stars"] > 5:
                response.reject("stars must be <= 5")
                return
            response.allow()

        resp = client.post("/classes/Review", json={"movie": "The Matrix", "stars": 6})
        assert resp.status_code == 400
        assert resp.json() == {"code": 142, "error": "stars must be <= 5"}
        assert cloud.query("Review").count() == 0

    def test_update(self, client):
        created = client.post("/classes/Review", json={"stars": 3}).json()["result"]
        resp = client.put(f"/classes/Review/{created['objectId']}", json={"stars": 4})
        assert resp.status_code == 200
        assert resp.json()["result"]["stars"] == 4
        assert resp.json()["result"]["createdAt"] == created["createdAt"]

    def test_delete(self, client):
        created = client.post("/classes/Review", json={"stars": 3}).json()["result"]
        resp = client.delete(f"/classes/Review/{created['objectId']}")
        assert resp.status_code == 200
        assert resp.json() == {"result": None}
        assert client.get(f"/classes/Review/{created['objectId']}").status_code == 404

    @pytest.mark.parametrize("method", ["get", "put", "delete"])
    def test_missing_object(self, client, method):
        kwargs = {"json": {"stars": 1}} if method == "put" else {}
        resp = getattr(client, method)("/classes/Review/nope", **kwargs)
        assert resp.status_code == 404
        assert resp.json() == {"code": 101, "error": "Object not found: Review/nope"}
