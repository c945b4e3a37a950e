from __future__ import annotations

import csv
import io

from fastapi.testclient import TestClient

from resource_api.common.middleware import REQUEST_ID_HEADER
from resource_api.main import create_app
from tests.catalog import CategoryResource


def test_request_id_is_echoed_or_generated(client) -> None:
    echoed = client.get("/api/categories", headers={REQUEST_ID_HEADER: "req-42"})
    generated = client.get("/api/categories")

    assert echoed.headers[REQUEST_ID_HEADER] == "req-42"
    assert len(generated.headers[REQUEST_ID_HEADER]) == 32


def test_resources_mount_under_the_api_prefix(seeded_client) -> None:
    response = seeded_client.get("/api/categories", params={"sortBy": "name"})

    assert response.status_code == 200
    assert response.json() == {
        "count": 2,
        "entities": [{"id": 2, "name": "Toys"}, {"id": 1, "name": "Tools"}],
    }


def test_csv_export(seeded_client) -> None:
    response = seeded_client.get("/api/categories/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"].endswith('.csv"')
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows == [["ID", "Name"], ["1", "Tools"], ["2", "Toys"]]


def test_unknown_route_uses_error_envelope(client) -> None:
    response = client.get("/api/nowhere")

    assert response.status_code == 404
    assert response.json() == {"success": False, "comment": "Not Found", "errors": []}


def test_method_not_allowed_uses_error_envelope(client) -> None:
    response = client.post("/api/categories/export")

    assert response.status_code == 405
    assert response.json()["success"] is False


def test_malformed_json_body_is_a_validation_error(client) -> None:
    response = client.post(
        "/api/categories", content="{not json", headers={"content-type": "application/json"}
    )

    assert response.status_code == 422
    assert response.json()["comment"] == "The given data was invalid."


def test_unexpected_errors_return_generic_500(settings) -> None:
    app = create_app(settings, resources=[CategoryResource(settings)])

    @app.get("/boom")
    def boom() -> None:
        raise RuntimeError("database password is hunter2")

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/boom")

    assert response.status_code == 500
    assert response.json() == {"success": False, "comment": "Internal server error", "errors": []}
    assert "hunter2" not in response.text


def test_lifespan_disposes_the_engine(app) -> None:
    with TestClient(app):
        assert app.state.db_engine is not None
        assert app.state.db_sessionmaker is not None

    assert app.state.db_engine is None
    assert app.state.db_sessionmaker is None
