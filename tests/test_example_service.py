from fastapi.testclient import TestClient

from examples.example_service.app import APP_STATE, app


def test_probe_endpoints_follow_simulated_faults():
    client = TestClient(app)

    client.post("/simulate/reset")
    assert client.get("/startup").status_code == 200
    assert client.get("/healthz").status_code == 200
    assert client.get("/ready").status_code == 200

    r = client.post("/simulate/unready")
    assert r.status_code == 200
    assert APP_STATE["unready"] is True
    assert client.get("/ready").status_code == 503
    assert client.get("/healthz").status_code == 200

    client.post("/simulate/dead")
    assert client.get("/healthz").status_code == 500
    assert client.get("/healthz").json()["detail"] == "Dead"

    client.post("/simulate/reset")
    assert APP_STATE["dead"] is False
    assert client.get("/ready").status_code == 200


def test_version_reports_identity():
    body = TestClient(app).get("/version").json()
    assert set(body) == {"version", "unit"}
