import io
import json

import pytest

from web_app import create_app
from tests.helpers_stl import binary_stl, cube_triangles


@pytest.fixture
def client():
    app = create_app()
    app.config["TESTING"] = True
    return app.test_client()


def _upload(client, payload: bytes, **form):
    data = {"file": (io.BytesIO(payload), "cube.stl")}
    data.update(form)
    return client.post("/api/upload", data=data, content_type="multipart/form-data")


def test_index_describes_upload(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert b"/api/upload" in resp.data
    assert b"PLA" in resp.data


def test_materials_endpoint(client):
    resp = client.get("/api/materials")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["materials"]["PETG"]["density_g_cm3"] == 1.27
    assert body["default_material"] == "PLA"
    assert set(body["models"]) == {"simple", "shell"}


def test_upload_cube_default_profile(client):
    resp = _upload(client, binary_stl(cube_triangles(10.0)))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["price"] == "$0.06"
    assert body["material"] == "PLA"
    assert body["volume_cm3"] == pytest.approx(1.0, rel=1e-6)
    assert body["usage"]["infill_volume_cm3"] == pytest.approx(0.15, rel=1e-6)
    assert body["usage"]["total_weight_g"] == pytest.approx(1.178, rel=1e-6)


def test_upload_with_numeric_material_and_shell_model(client):
    resp = _upload(client, binary_stl(cube_triangles(10.0)), infill="15", material="1.24", model="shell")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["price"] == "$0.07"
    assert body["usage"]["model"] == "shell"
    assert body["usage"]["outer_shell_volume_cm3"] > 0


def test_upload_preset_material_changes_weight(client):
    pla = _upload(client, binary_stl(cube_triangles(30.0)), material="PLA").get_json()
    abs_ = _upload(client, binary_stl(cube_triangles(30.0)), material="ABS").get_json()
    assert abs_["usage"]["total_weight_g"] < pla["usage"]["total_weight_g"]


def test_upload_without_file(client):
    resp = client.post("/api/upload", data={"infill": "15"}, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["kind"] == "no_file"


def test_upload_malformed_stl(client):
    resp = _upload(client, b"\0" * 20)
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["kind"] == "malformed_stl"
    assert "84" not in body["error"]


def test_upload_trailing_bytes_is_unparseable(client):
    resp = _upload(client, binary_stl(cube_triangles(10.0)) + b"\0\0\0")
    assert resp.status_code == 422
    assert resp.get_json()["kind"] == "unparseable_stl"


@pytest.mark.parametrize("form", [{"infill": "150"}, {"infill": "-5"}, {"infill": "abc"}, {"material": "wood"}, {"model": "slicer"}])
def test_upload_invalid_parameters(client, form):
    resp = _upload(client, binary_stl(cube_triangles(10.0)), **form)
    assert resp.status_code == 400
    assert resp.get_json()["kind"] == "invalid_parameter"


def test_upload_too_large(tmp_path):
    (tmp_path / "materials.json").write_text(json.dumps({"PLA": {"density_g_cm3": 1.24}}), encoding="utf-8")
    (tmp_path / "pricing.json").write_text(json.dumps({"limits": {"max_upload_mb": 0.001}}), encoding="utf-8")
    client = create_app(str(tmp_path)).test_client()

    resp = _upload(client, binary_stl(cube_triangles(10.0) * 4))
    assert resp.status_code == 413
    assert resp.get_json()["kind"] == "too_large"


def test_cors_headers(client):
    resp = client.get("/api/materials", headers={"Origin": "https://shop.example.com"})
    assert resp.headers.get("Access-Control-Allow-Origin") == "*"


def test_cors_preflight_sends_wildcard(client):
    resp = client.options(
        "/api/upload",
        headers={
            "Origin": "https://shop.example.com",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert resp.headers.get("Access-Control-Allow-Origin") == "*"


def test_stream_volume_mode_from_env(monkeypatch):
    monkeypatch.setenv("FILAMENT_VOLUME_MODE", "Stream")
    app = create_app()
    assert app.config["VOLUME_MODE"] == "stream"

    resp = _upload(app.test_client(), binary_stl(cube_triangles(10.0)))
    assert resp.status_code == 200
    assert resp.get_json()["price"] == "$0.06"


def test_unknown_volume_mode_fails_at_startup(monkeypatch):
    monkeypatch.setenv("FILAMENT_VOLUME_MODE", "bogus")
    with pytest.raises(ValueError, match="FILAMENT_VOLUME_MODE"):
        create_app()
