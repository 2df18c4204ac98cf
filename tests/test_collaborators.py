import json
import re

import jinja2
import pytest

import sharecraft


@pytest.fixture
def kv(tmp_path):
    kv = sharecraft.SqliteKVStore(str(tmp_path / "kv.db"))
    kv.init_schema()
    return kv


@pytest.fixture
def sessions(kv):
    return sharecraft.SessionAuthenticator(kv, username="admin", password="hunter2", ttl_seconds=60)


def test_session_round_trip(sessions):
    token = sessions.create_session("admin")

    auth = sessions.authenticate(f"theme=dark; session={token}; lang=en")

    assert auth.authenticated is True
    assert auth.user == {"username": "admin", "role": "admin"}


@pytest.mark.parametrize("cookie", [None, "", "theme=dark", "session=unknown-token"])
def test_missing_or_unknown_session(sessions, cookie):
    assert sessions.authenticate(cookie) == sharecraft.AuthStatus(authenticated=False)


def test_unreadable_session_payload_rejected(sessions, kv):
    kv.put("session_broken", "valid", 60)

    assert sessions.authenticate("session=broken").authenticated is False


def test_session_expires_after_ttl(sessions, monkeypatch):
    current_time = {"value": 1_000.0}
    monkeypatch.setattr(sharecraft.time, "time", lambda: current_time["value"])

    token = sessions.create_session("admin")
    assert sessions.authenticate(f"session={token}").authenticated is True

    current_time["value"] += 61
    assert sessions.authenticate(f"session={token}").authenticated is False


def test_kv_store_stores_value_with_ttl(kv, monkeypatch):
    monkeypatch.setattr(sharecraft.time, "time", lambda: 50.0)

    kv.put("site_domain", "preview.example", 10)
    kv.put("forever", json.dumps({"a": 1}))

    assert kv.get("site_domain") == "preview.example"
    assert kv.get("forever") == '{"a": 1}'
    assert kv.get("absent") is None

    monkeypatch.setattr(sharecraft.time, "time", lambda: 60.0)
    assert kv.get("site_domain") is None
    assert kv.get("forever") == '{"a": 1}'


def test_check_credentials(sessions):
    assert sessions.check_credentials("admin", "hunter2") is True
    assert sessions.check_credentials("admin", "hunter3") is False
    assert sessions.check_credentials("root", "hunter2") is False


def test_login_disabled_without_password(kv):
    sessions = sharecraft.SessionAuthenticator(kv, username="admin", password="")

    assert sessions.check_credentials("admin", "") is False


def test_extract_session_token():
    assert sharecraft.extract_session_token("a=1; session=abc-123; b=2") == "abc-123"
    assert sharecraft.extract_session_token("a=1") is None
    assert sharecraft.extract_session_token("xsession=abc") is None
    assert sharecraft.extract_session_token("xsession=evil; session=abc-123") == "abc-123"


def test_lookalike_cookie_does_not_authenticate(sessions):
    token = sessions.create_session("admin")

    assert sessions.authenticate(f"xsession={token}").authenticated is False
    assert sessions.authenticate(f"xsession=forged; session={token}").authenticated is True


def test_blob_store_round_trip(tmp_path):
    blobs = sharecraft.FileBlobStore(str(tmp_path / "images"))

    stored = blobs.put("card.webp", b"RIFF....WEBP", "image/webp")
    fetched = blobs.get("card.webp")

    assert fetched == stored
    assert fetched.content_type == "image/webp"
    assert blobs.get("other.webp") is None


@pytest.mark.parametrize("key", ["../secret", "nested/card.png", "", ".hidden", "card.png.meta.json"])
def test_blob_store_rejects_unsafe_keys(tmp_path, key):
    blobs = sharecraft.FileBlobStore(str(tmp_path / "images"))

    assert blobs.get(key) is None
    with pytest.raises(sharecraft.ValidationError):
        blobs.put(key, b"data", "image/png")


def test_template_cache_compiles_once(tmp_path):
    (tmp_path / "hello.html").write_text("Hello {{ name }}", encoding="utf-8")
    templates = sharecraft.TemplateCache(str(tmp_path))

    assert "hello.html" not in templates
    assert templates.render("hello.html", name="<crawler>") == "Hello &lt;crawler&gt;"
    first = templates.get("hello.html")

    (tmp_path / "hello.html").write_text("Changed {{ name }}", encoding="utf-8")

    assert templates.get("hello.html") is first
    assert templates.render("hello.html", name="bot") == "Hello bot"
    assert len(templates) == 1


def test_template_cache_missing_template(tmp_path):
    templates = sharecraft.TemplateCache(str(tmp_path))

    with pytest.raises(jinja2.TemplateNotFound):
        templates.get("missing.html")
    assert len(templates) == 0


@pytest.mark.parametrize(
    "path, kind",
    [
        ("/api", sharecraft.RequestKind.API),
        ("/api/posts/3", sharecraft.RequestKind.API),
        ("/admin", sharecraft.RequestKind.ADMIN),
        ("/admin/edit", sharecraft.RequestKind.ADMIN),
        ("/images/1700000000000-abc.png", sharecraft.RequestKind.IMAGE),
        ("/", sharecraft.RequestKind.PAGE),
        ("/apiary", sharecraft.RequestKind.PAGE),
        ("/administration-guide", sharecraft.RequestKind.PAGE),
        ("/blog/images/cat", sharecraft.RequestKind.PAGE),
    ],
)
def test_classify_request(path, kind):
    assert sharecraft.classify_request(path) is kind


def test_generate_image_name():
    assert re.fullmatch(r"\d+-[a-z0-9]{13}\.jpg", sharecraft.generate_image_name("Holiday.JPG", "image/jpeg"))
    assert re.fullmatch(r"\d+-[a-z0-9]{13}\.png", sharecraft.generate_image_name("blob", "image/png"))
    assert re.fullmatch(r"\d+-[a-z0-9]{13}", sharecraft.generate_image_name("blob", None))
    assert sharecraft.generate_image_name("a.png", None) != sharecraft.generate_image_name("a.png", None)


def test_build_origin_url():
    assert sharecraft.build_origin_url("https://origin.example/", "/blog/hello", "") == "https://origin.example/blog/hello"
    assert sharecraft.build_origin_url("https://origin.example", "/", "a=1") == "https://origin.example/?a=1"


def test_load_settings_ignores_unknown_log_level():
    assert sharecraft.load_settings({"SHARECRAFT_LOG_LEVEL": "verbose"}).log_level == "INFO"
    assert sharecraft.load_settings({"SHARECRAFT_LOG_LEVEL": " debug "}).log_level == "DEBUG"


def test_load_settings_from_environment():
    settings = sharecraft.load_settings(
        {
            "SHARECRAFT_ORIGIN_URL": " https://origin.example ",
            "SHARECRAFT_SESSION_TTL": "3600",
            "SHARECRAFT_ORIGIN_TIMEOUT": "not-a-number",
            "SHARECRAFT_REWRITER": "SOUP",
            "SHARECRAFT_ADMIN_PASSWORD": "pw",
        }
    )

    assert settings.origin_url == "https://origin.example"
    assert settings.session_ttl == 3600
    assert settings.origin_timeout == 15.0
    assert settings.rewriter == "soup"
    assert settings.admin_password == "pw"
    assert settings.db_path == "sharecraft.db"


def test_create_app_wires_selected_rewriter(settings):
    settings.rewriter = "soup"

    app = sharecraft.create_app(settings)

    assert app.state.rewriter is sharecraft.rewrite_meta_tags_with_soup
    assert app.state.sessions.ttl_seconds == 86400
