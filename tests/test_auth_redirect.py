"""
tests/test_auth_redirect.py -- Integration tests for the login redirect chain.

These tests run the real ASGI stack (session middleware, access gate, web
routes) with the gateway fixture (follow_redirects=False). Assertions are on
Location and Set-Cookie headers directly -- following the redirect would hide
them. Only the GitHub client is a mock.

Coverage:
  - Anonymous requests -> 302 /login?next={path}, with a fresh session cookie
  - OAuth round trip: begin, callback, rotated cookie, protected resource
  - Forged, missing, and replayed callback state -> /login?error=oauth_failed
  - Password form login: success, wrong password, unknown user
  - Logout rotates the session and re-gates the resource, and a request
    finishing after the logout cannot bring the old session back
  - Dangling user ids and store outages
"""

from __future__ import annotations

from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest
from authlib.integrations.starlette_client import OAuthError

from asgi import app
from auth.context import USER_ID_KEY
from core.errors import NotFound, StoreUnavailable
from tests.conftest import ALICE_PASSWORD, COOKIE_NAME, GITHUB_LOGIN, Gateway

OAUTH_FAILED = "/login?error=oauth_failed"


def _cookie_header(session_id: str) -> dict[str, str]:
    return {"cookie": f"{COOKIE_NAME}={session_id}"}


def _set_cookie_headers(resp) -> list[str]:
    return [v for k, v in resp.headers.multi_items() if k.lower() == "set-cookie"]


def _begin_oauth(gateway: Gateway, next_path: str = "/") -> str:
    """GET /login/oauth and return the state carried in the provider URL."""
    resp = gateway.client.get("/login/oauth", params={"next": next_path})
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith("https://github.com/login/oauth/authorize")
    return parse_qs(urlparse(location).query)["state"][0]


class TestAccessGate:
    """Anonymous requests to the protected resource."""

    def test_anonymous_redirects_to_login(self, gateway: Gateway) -> None:
        resp = gateway.client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?next=/"

    def test_anonymous_request_gets_session_cookie(self, gateway: Gateway) -> None:
        """Even the redirect carries a session cookie with the hardening flags."""
        resp = gateway.client.get("/")
        headers = [h.lower() for h in _set_cookie_headers(resp)]
        assert len(headers) == 1
        cookie = headers[0]
        assert cookie.startswith(f"{COOKIE_NAME}=")
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "path=/" in cookie
        assert "max-age=86400" in cookie
        assert "secure" not in cookie  # DEBUG=true in the test environment

    def test_session_cookie_is_reused(self, gateway: Gateway) -> None:
        gateway.client.get("/")
        first = gateway.session_cookie()
        gateway.client.get("/")
        assert gateway.session_cookie() == first

    def test_unknown_cookie_gets_replaced(self, gateway: Gateway) -> None:
        resp = gateway.client.get("/", headers=_cookie_header("not-a-real-session"))
        assert resp.status_code == 302
        assert gateway.session_cookie() != "not-a-real-session"

    def test_oversized_cookie_is_ignored(self, gateway: Gateway) -> None:
        resp = gateway.client.get("/", headers=_cookie_header("x" * 500))
        assert resp.status_code == 302
        assert len(gateway.session_cookie()) < 64


class TestOAuthLogin:
    """The GitHub authorization-code round trip through the browser routes."""

    def test_round_trip_logs_in_and_rotates_cookie(self, gateway: Gateway) -> None:
        state = _begin_oauth(gateway)
        pre_login = gateway.session_cookie()

        resp = gateway.client.get("/login/oauth/callback", params={"code": "abc", "state": state})

        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert resp.headers["cache-control"] == "no-store"
        assert gateway.session_cookie() != pre_login

        page = gateway.client.get("/")
        assert page.status_code == 200
        assert GITHUB_LOGIN in page.text

    def test_pre_login_session_is_deleted(self, gateway: Gateway) -> None:
        state = _begin_oauth(gateway)
        pre_login = gateway.session_cookie()
        gateway.client.get("/login/oauth/callback", params={"code": "abc", "state": state})

        with pytest.raises(NotFound):
            gateway.session_store.load(pre_login)
        session = gateway.session_store.load(gateway.session_cookie())
        assert session.data[USER_ID_KEY] is not None
        assert gateway.session_store.take_attempt(gateway.session_cookie()) is None

    def test_next_path_survives_round_trip(self, gateway: Gateway) -> None:
        state = _begin_oauth(gateway, next_path="/reports?page=2")
        resp = gateway.client.get("/login/oauth/callback", params={"code": "abc", "state": state})
        assert resp.headers["location"] == "/reports?page=2"

    def test_offsite_next_is_dropped(self, gateway: Gateway) -> None:
        state = _begin_oauth(gateway, next_path="//evil.example.com/")
        resp = gateway.client.get("/login/oauth/callback", params={"code": "abc", "state": state})
        assert resp.headers["location"] == "/"

    def test_forged_state_never_reaches_provider(self, gateway: Gateway) -> None:
        _begin_oauth(gateway)
        resp = gateway.client.get("/login/oauth/callback", params={"code": "abc", "state": "forged"})

        assert resp.status_code == 302
        assert resp.headers["location"] == OAUTH_FAILED
        gateway.github.fetch_access_token.assert_not_awaited()
        assert gateway.client.get("/").status_code == 302

    def test_callback_without_begin(self, gateway: Gateway) -> None:
        resp = gateway.client.get("/login/oauth/callback", params={"code": "abc", "state": "anything"})
        assert resp.headers["location"] == OAUTH_FAILED
        gateway.github.fetch_access_token.assert_not_awaited()

    def test_state_from_another_session_is_rejected(self, gateway: Gateway) -> None:
        """A state minted for the victim's session is useless in the attacker's."""
        victim_state = _begin_oauth(gateway)
        gateway.client.cookies.clear()

        resp = gateway.client.get("/login/oauth/callback", params={"code": "abc", "state": victim_state})
        assert resp.headers["location"] == OAUTH_FAILED
        gateway.github.fetch_access_token.assert_not_awaited()

    def test_replayed_state_is_rejected(self, gateway: Gateway) -> None:
        state = _begin_oauth(gateway)
        pre_login = gateway.session_cookie()
        gateway.client.get("/login/oauth/callback", params={"code": "abc", "state": state})

        # Replay with the original pre-login cookie, as a captured request would.
        gateway.client.cookies.clear()
        resp = gateway.client.get(
            "/login/oauth/callback",
            params={"code": "abc", "state": state},
            headers=_cookie_header(pre_login),
        )
        assert resp.headers["location"] == OAUTH_FAILED
        assert gateway.github.fetch_access_token.await_count == 1
        assert gateway.client.get("/").status_code == 302

    def test_token_exchange_failure(self, gateway: Gateway) -> None:
        gateway.github.fetch_access_token.side_effect = OAuthError(error="bad_verification_code")
        state = _begin_oauth(gateway)
        resp = gateway.client.get("/login/oauth/callback", params={"code": "stale", "state": state})

        assert resp.headers["location"] == OAUTH_FAILED
        assert gateway.user_store.list_users() == []
        assert gateway.client.get("/").status_code == 302

    def test_oauth_disabled(self, gateway: Gateway) -> None:
        app.state.oauth_flow = None
        assert gateway.client.get("/login/oauth").headers["location"] == OAUTH_FAILED
        assert gateway.client.get("/login/oauth/callback").headers["location"] == OAUTH_FAILED
        assert "Sign in with GitHub" not in gateway.client.get("/login").text

    def test_failure_page_shows_generic_message(self, gateway: Gateway) -> None:
        resp = gateway.client.get(OAUTH_FAILED)
        assert resp.status_code == 200
        assert "GitHub sign-in failed" in resp.text


class TestPasswordLogin:
    """The username/password form on /login."""

    def test_login_form_renders(self, gateway: Gateway) -> None:
        resp = gateway.client.get("/login", params={"next": "/reports"})
        assert resp.status_code == 200
        assert 'action="/login?next=/reports"' in resp.text
        assert "Sign in with GitHub" in resp.text

    def test_unknown_error_param_is_not_reflected(self, gateway: Gateway) -> None:
        resp = gateway.client.get("/login", params={"error": "<script>alert(1)</script>"})
        assert resp.status_code == 200
        assert "<script>" not in resp.text

    def test_success_redirects_and_rotates(self, gateway: Gateway) -> None:
        gateway.client.get("/login")
        pre_login = gateway.session_cookie()

        resp = gateway.client.post(
            "/login", params={"next": "/reports"}, data={"username": "alice", "password": ALICE_PASSWORD}
        )

        assert resp.status_code == 302
        assert resp.headers["location"] == "/reports"
        assert gateway.session_cookie() != pre_login
        page = gateway.client.get("/")
        assert page.status_code == 200
        assert "alice" in page.text

    def test_wrong_password(self, gateway: Gateway) -> None:
        resp = gateway.client.post("/login", data={"username": "alice", "password": "nope"})
        assert resp.status_code == 401
        assert "Invalid username or password." in resp.text
        assert gateway.client.get("/").status_code == 302

    def test_unknown_user_looks_like_wrong_password(self, gateway: Gateway) -> None:
        wrong = gateway.client.post("/login", data={"username": "alice", "password": "nope"})
        unknown = gateway.client.post("/login", data={"username": "mallory", "password": "nope"})
        assert unknown.status_code == wrong.status_code == 401
        assert "Invalid username or password." in unknown.text

    def test_authenticated_user_skips_login_form(self, gateway: Gateway) -> None:
        gateway.client.post("/login", data={"username": "alice", "password": ALICE_PASSWORD})
        resp = gateway.client.get("/login")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"


class TestLogout:
    def test_logout_rotates_and_regates(self, gateway: Gateway) -> None:
        gateway.client.post("/login", data={"username": "alice", "password": ALICE_PASSWORD})
        logged_in = gateway.session_cookie()

        resp = gateway.client.post("/logout")

        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
        assert gateway.session_cookie() != logged_in
        with pytest.raises(NotFound):
            gateway.session_store.load(logged_in)
        assert gateway.client.get("/").status_code == 302

    def test_anonymous_logout_is_harmless(self, gateway: Gateway) -> None:
        resp = gateway.client.post("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"

    def test_request_finishing_after_logout_does_not_revive_session(self, gateway: Gateway) -> None:
        """A request sharing the cookie writes back only after logout deleted the row."""
        gateway.client.post("/login", data={"username": "alice", "password": ALICE_PASSWORD})
        logged_in = gateway.session_cookie()
        store = gateway.session_store
        real_save = store.save

        def logout_lands_first(session):
            store.delete(session.id)
            return real_save(session)

        with patch.object(store, "save", side_effect=logout_lands_first):
            resp = gateway.client.get("/")

        assert resp.status_code == 200  # the handler ran before the logout landed
        with pytest.raises(NotFound):
            store.load(logged_in)
        assert "max-age=0" in _set_cookie_headers(resp)[0].lower()
        assert gateway.session_cookie() is None

        resp = gateway.client.get("/", headers=_cookie_header(logged_in))
        assert resp.status_code == 302
        assert gateway.session_cookie() != logged_in


class TestSessionEdgeCases:
    def test_dangling_user_id_is_cleared(self, gateway: Gateway) -> None:
        session = gateway.session_store.create()
        session.data[USER_ID_KEY] = 424242
        gateway.session_store.save(session)

        resp = gateway.client.get("/", headers=_cookie_header(session.id))

        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?next=/"
        assert USER_ID_KEY not in gateway.session_store.load(session.id).data

    def test_store_outage_returns_503(self, gateway: Gateway) -> None:
        with patch.object(gateway.session_store, "create", side_effect=StoreUnavailable("database is locked")):
            resp = gateway.client.get("/")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "store_unavailable"
