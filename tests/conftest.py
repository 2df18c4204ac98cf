import pathlib
import sys

import pytest
import requests
from fastapi.testclient import TestClient

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import sharecraft


ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "s3cret-password"


def make_origin_response(
    body: str,
    status_code: int = 200,
    content_type: str = "text/html; charset=utf-8",
    extra_headers=None,
):
    response = requests.Response()
    response.status_code = status_code
    response._content = body.encode("utf-8")
    response.headers["Content-Type"] = content_type
    response.headers["X-Origin"] = "example"
    response.headers.update(extra_headers or {})
    # Same fallback requests applies to a live response: ISO-8859-1 for text/* without a charset.
    response.encoding = requests.utils.get_encoding_from_headers(response.headers)
    return response


@pytest.fixture
def settings(tmp_path):
    return sharecraft.Settings(
        origin_url="https://origin.example",
        db_path=str(tmp_path / "sharecraft.db"),
        blob_dir=str(tmp_path / "images"),
        site_domain="preview.example",
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
    )


@pytest.fixture
def store(settings):
    store = sharecraft.OverrideStore(settings.db_path)
    store.init_schema()
    return store


@pytest.fixture
def client(settings):
    app = sharecraft.create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def logged_in_client(client):
    response = client.post(
        "/admin/login",
        data={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD},
        follow_redirects=False,
    )
    assert response.status_code == 303
    return client
