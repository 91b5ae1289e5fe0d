"""Tests for iglogin.controller -- the redirect-interception state machine.

Covers:
- Authorization URL construction and surface loading
- Implicit flow, public-client code flow, confidential code exchange
- Provider errors, exchange failures, in-page error messages
- Dismissal, reset and the state guards around them
- Home-page remounts and stale navigation contexts
- State validation hook
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional
from urllib.parse import parse_qsl, urlparse

import httpx
import pytest

from iglogin.controller import CallbackSet, FlowController, build_authorize_url
from iglogin.exceptions import FlowStateError
from iglogin.models import (
    AuthorizationRequest,
    ExchangeResult,
    FlowState,
    LoginConfig,
    NavigationEvent,
    ResponseType,
)

REDIRECT = "https://example.com/auth/callback"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_config(**kwargs: Any) -> LoginConfig:
    defaults: dict[str, Any] = {"app_id": "app-123", "redirect_url": REDIRECT}
    defaults.update(kwargs)
    return LoginConfig(**defaults)


def _nav(url: str, title: str = "", context: Optional[int] = None) -> NavigationEvent:
    return NavigationEvent(url=url, title=title, is_loading=False, context=context)


def _navigate(controller: FlowController, url: str, **kwargs: Any) -> None:
    asyncio.run(controller.on_navigation(_nav(url, **kwargs)))


class GatedExchanger:
    """Exchanger that blocks until released, for interleaving tests."""

    def __init__(self, result: Optional[ExchangeResult] = None) -> None:
        self.result = result or ExchangeResult("LATE", {"access_token": "LATE"})
        self.gate: Optional[asyncio.Event] = None
        self.calls = 0

    async def exchange(self, client_id: str, client_secret: Optional[str], redirect_uri: str, code: str) -> ExchangeResult:
        self.calls += 1
        assert self.gate is not None
        await self.gate.wait()
        return self.result


# ---------------------------------------------------------------------------
# present()
# ---------------------------------------------------------------------------


class TestPresent:
    def test_loads_authorize_url_with_locale_header(self, make_controller, surface) -> None:
        controller = make_controller(locale="fr", response_type="token")

        url = controller.present()

        assert controller.state == FlowState.PRESENTING
        assert surface.calls == ["load", "show"]
        loaded_url, headers, incognito = surface.loaded[0]
        assert loaded_url == url
        assert headers == {"Accept-Language": "fr"}
        assert incognito is False

        parsed = urlparse(url)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == (
            "https://api.instagram.com/oauth/authorize/"
        )
        assert dict(parse_qsl(parsed.query)) == {
            "client_id": "app-123",
            "redirect_uri": REDIRECT,
            "response_type": "token",
            "scope": "user_profile,user_media",
        }
        assert "scope=user_profile,user_media" in parsed.query

    def test_passes_incognito(self, make_controller, surface) -> None:
        make_controller(incognito=True).present()
        assert surface.loaded[0][2] is True

    def test_explicit_request_overrides_config(self, make_controller, surface) -> None:
        controller = make_controller()
        request = AuthorizationRequest(
            client_id="other",
            redirect_uri="https://other.test/cb",
            scopes=("user_profile",),
            response_type=ResponseType.TOKEN,
            locale="de",
        )
        controller.present(request)
        assert controller.request == request
        assert "client_id=other" in surface.loaded[0][0]
        assert surface.loaded[0][1] == {"Accept-Language": "de"}

    def test_present_twice_raises(self, make_controller) -> None:
        controller = make_controller()
        controller.present()
        with pytest.raises(FlowStateError, match="presenting"):
            controller.present()

    def test_present_after_terminal_starts_new_attempt(self, make_controller, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()
        _navigate(controller, REDIRECT + "#access_token=ONE")
        controller.present()
        assert controller.state == FlowState.PRESENTING
        _navigate(controller, REDIRECT + "#access_token=TWO")
        assert [t for t, _ in callbacks.successes] == ["ONE", "TWO"]


class TestBuildAuthorizeUrl:
    def test_appends_to_existing_query(self) -> None:
        request = AuthorizationRequest(client_id="a", redirect_uri="https://x.test/cb")
        url = build_authorize_url(request, "https://idp.test/authorize?force=1")
        assert url.startswith("https://idp.test/authorize?force=1&client_id=a")

    def test_duplicate_scopes_sent_once(self) -> None:
        request = AuthorizationRequest(
            client_id="a", redirect_uri="https://x.test/cb", scopes=("a", "b", "a")
        )
        assert "scope=a,b" in build_authorize_url(request, "https://idp.test/authorize")


# ---------------------------------------------------------------------------
# Redirect interception
# ---------------------------------------------------------------------------


class TestImplicitFlow:
    def test_token_redirect_succeeds(self, make_controller, surface, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()

        _navigate(controller, REDIRECT + "#access_token=XYZ")

        assert callbacks.successes == [("XYZ", {"access_token": "XYZ"})]
        assert callbacks.failures == []
        assert controller.state == FlowState.TERMINAL
        assert surface.calls[-2:] == ["stop_loading", "hide"]

    def test_unrelated_navigation_ignored(self, make_controller, surface, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()

        _navigate(controller, "https://www.instagram.com/accounts/login/?next=x", title="Login")

        assert controller.state == FlowState.PRESENTING
        assert callbacks.terminal_count == 0
        assert "hide" not in surface.calls

    def test_load_error_on_redirect_is_intercepted(self, make_controller, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()

        asyncio.run(controller.on_error(_nav(REDIRECT + "#access_token=ERR")))

        assert callbacks.successes == [("ERR", {"access_token": "ERR"})]

    def test_empty_access_token_fails_with_mapping(self, make_controller, surface, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()

        _navigate(controller, REDIRECT + "#access_token=")

        assert callbacks.successes == []
        assert callbacks.failures == [{"access_token": ""}]
        assert controller.state == FlowState.TERMINAL
        assert "hide" in surface.calls


class TestCodeFlow:
    def test_public_client_gets_cleaned_code(self, make_controller, callbacks, token_endpoint) -> None:
        controller = make_controller(response_type="code")
        controller.present()

        _navigate(controller, REDIRECT + "?code=AAA#_1")

        assert callbacks.successes == [("AAA1", None)]
        assert token_endpoint.requests == []
        assert controller.state == FlowState.TERMINAL

    def test_public_client_empty_code_fails(self, make_controller, callbacks, token_endpoint) -> None:
        controller = make_controller(response_type="code")
        controller.present()

        _navigate(controller, REDIRECT + "?code=#_")

        assert callbacks.failures == [{}]
        assert callbacks.successes == []
        assert token_endpoint.requests == []

    def test_confidential_client_exchanges_code(self, make_controller, callbacks, token_endpoint) -> None:
        controller = make_controller(response_type="code", app_secret="s3cret")
        controller.present()

        _navigate(controller, REDIRECT + "?code=BBB")

        assert callbacks.successes == [("ZZZ", {"access_token": "ZZZ"})]
        assert len(token_endpoint.requests) == 1
        assert token_endpoint.form() == {
            "client_id": "app-123",
            "client_secret": "s3cret",
            "grant_type": "authorization_code",
            "redirect_uri": REDIRECT,
            "code": "BBB",
        }
        assert controller.state == FlowState.TERMINAL

    def test_body_without_access_token_still_succeeds(
        self, make_controller, callbacks, token_endpoint
    ) -> None:
        token_endpoint.body = {"user_id": 1, "token": "x"}
        controller = make_controller(app_secret="s3cret")
        controller.present()

        _navigate(controller, REDIRECT + "?code=BBB")

        assert callbacks.successes == [(None, {"user_id": 1, "token": "x"})]
        assert callbacks.failures == []
        assert controller.state == FlowState.TERMINAL

    def test_token_response_type_with_code_is_exchanged(
        self, make_controller, callbacks, token_endpoint
    ) -> None:
        controller = make_controller(response_type="token")
        controller.present()

        _navigate(controller, REDIRECT + "?code=CCC")

        assert len(token_endpoint.requests) == 1
        assert callbacks.successes == [("ZZZ", {"access_token": "ZZZ"})]

    def test_network_error_fails_with_empty_payload(
        self, make_controller, callbacks, token_endpoint
    ) -> None:
        token_endpoint.error = httpx.ConnectError("connection refused")
        controller = make_controller(app_secret="s3cret")
        controller.present()

        _navigate(controller, REDIRECT + "?code=BBB")

        assert callbacks.failures == [{}]
        assert callbacks.successes == []
        assert controller.state == FlowState.TERMINAL

    def test_http_error_fails_with_empty_payload(
        self, make_controller, callbacks, token_endpoint
    ) -> None:
        token_endpoint.status_code = 400
        token_endpoint.body = {"error_type": "OAuthException", "error_message": "bad code"}
        controller = make_controller(app_secret="s3cret")
        controller.present()

        _navigate(controller, REDIRECT + "?code=BBB")

        assert callbacks.failures == [{}]

    def test_exchange_error_detail_exposed_when_configured(
        self, make_controller, callbacks, token_endpoint
    ) -> None:
        token_endpoint.status_code = 400
        token_endpoint.body = {"error_type": "OAuthException", "error_message": "bad code"}
        controller = make_controller(app_secret="s3cret", expose_exchange_errors=True)
        controller.present()

        _navigate(controller, REDIRECT + "?code=BBB")

        [payload] = callbacks.failures
        assert payload["error"] == "exchange_failed"
        assert payload["status_code"] == 400
        assert "bad code" in payload["detail"]

    def test_exchange_code_outside_exchanging_raises(self, make_controller) -> None:
        controller = make_controller()
        controller.present()
        with pytest.raises(FlowStateError):
            asyncio.run(controller.exchange_code("abc"))


class TestProviderErrors:
    def test_error_redirect_fails_with_mapping(self, make_controller, callbacks) -> None:
        controller = make_controller()
        controller.present()

        _navigate(controller, REDIRECT + "?error=access_denied")

        assert callbacks.failures == [{"error": "access_denied"}]
        assert controller.state == FlowState.TERMINAL

    def test_full_error_payload_passed_through(self, make_controller, callbacks) -> None:
        controller = make_controller()
        controller.present()

        _navigate(
            controller,
            REDIRECT + "?error=access_denied&error_reason=user_denied"
            "&error_description=The+user+denied+your+request.",
        )

        assert callbacks.failures == [
            {
                "error": "access_denied",
                "error_reason": "user_denied",
                "error_description": "The user denied your request.",
            }
        ]


# ---------------------------------------------------------------------------
# Guards and concurrency
# ---------------------------------------------------------------------------


class TestStateGuards:
    def test_events_ignored_before_present(self, make_controller, callbacks) -> None:
        controller = make_controller(response_type="token")
        _navigate(controller, REDIRECT + "#access_token=XYZ")
        assert controller.state == FlowState.IDLE
        assert callbacks.terminal_count == 0

    def test_events_ignored_after_terminal(self, make_controller, surface, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()
        _navigate(controller, REDIRECT + "#access_token=XYZ")
        calls_before = list(surface.calls)

        _navigate(controller, REDIRECT + "#access_token=AGAIN")
        _navigate(controller, REDIRECT + "?error=access_denied")
        controller.on_message('{"error_type": "OAuthException"}')

        assert callbacks.successes == [("XYZ", {"access_token": "XYZ"})]
        assert callbacks.failures == []
        assert surface.calls == calls_before
        assert controller.state == FlowState.TERMINAL

    def test_events_ignored_while_exchanging(self, surface, callbacks) -> None:
        exchanger = GatedExchanger()
        controller = FlowController(
            _make_config(app_secret="s3cret"), surface, callbacks, exchanger=exchanger
        )

        async def scenario() -> None:
            exchanger.gate = asyncio.Event()
            controller.present()
            task = asyncio.create_task(controller.on_navigation(_nav(REDIRECT + "?code=BBB")))
            await asyncio.sleep(0)
            assert controller.state == FlowState.EXCHANGING

            await controller.on_navigation(_nav(REDIRECT + "#access_token=OTHER"))
            await controller.on_navigation(_nav(REDIRECT + "?code=SECOND"))
            assert callbacks.terminal_count == 0
            assert controller.state == FlowState.EXCHANGING

            exchanger.gate.set()
            await task

        asyncio.run(scenario())

        assert exchanger.calls == 1
        assert callbacks.successes == [("LATE", {"access_token": "LATE"})]

    def test_late_exchange_result_after_dismiss_discarded(self, surface, callbacks) -> None:
        exchanger = GatedExchanger()
        controller = FlowController(
            _make_config(app_secret="s3cret"), surface, callbacks, exchanger=exchanger
        )

        async def scenario() -> None:
            exchanger.gate = asyncio.Event()
            controller.present()
            task = asyncio.create_task(controller.on_navigation(_nav(REDIRECT + "?code=BBB")))
            await asyncio.sleep(0)
            controller.dismiss()
            exchanger.gate.set()
            await task

        asyncio.run(scenario())

        assert callbacks.terminal_count == 0
        assert callbacks.closes == 1
        assert controller.state == FlowState.IDLE

    def test_host_callback_exception_does_not_escape(self, surface) -> None:
        def explode(token: str, raw: Any) -> None:
            raise RuntimeError("host bug")

        controller = FlowController(
            _make_config(response_type="token"), surface, CallbackSet(success=explode)
        )
        controller.present()

        _navigate(controller, REDIRECT + "#access_token=XYZ")

        assert controller.state == FlowState.TERMINAL


class TestDismissAndReset:
    def test_dismiss_while_presenting(self, make_controller, surface, callbacks) -> None:
        controller = make_controller()
        controller.present()

        controller.dismiss()

        assert controller.state == FlowState.IDLE
        assert callbacks.terminal_count == 0
        assert callbacks.closes == 1
        assert surface.calls[-1] == "hide"

    def test_dismiss_when_idle_is_noop(self, make_controller, surface, callbacks) -> None:
        controller = make_controller()
        controller.dismiss()
        assert surface.calls == []
        assert callbacks.closes == 0

    def test_events_after_dismiss_ignored(self, make_controller, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()
        controller.dismiss()

        _navigate(controller, REDIRECT + "#access_token=XYZ")

        assert callbacks.terminal_count == 0

    def test_reset_from_terminal(self, make_controller) -> None:
        controller = make_controller()
        controller.present()
        _navigate(controller, REDIRECT + "?error=access_denied")

        controller.reset()

        assert controller.state == FlowState.IDLE
        assert controller.request is None

    def test_reset_while_presenting_raises(self, make_controller) -> None:
        controller = make_controller()
        controller.present()
        with pytest.raises(FlowStateError, match="dismiss"):
            controller.reset()


# ---------------------------------------------------------------------------
# Home page heuristic and navigation contexts
# ---------------------------------------------------------------------------


class TestHomePageRemount:
    def test_home_page_forces_fresh_context(self, make_controller, surface, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()
        assert controller.context == 0

        _navigate(controller, "https://www.instagram.com/", title="Instagram")

        assert "remount" in surface.calls
        assert controller.context == 1
        assert controller.state == FlowState.PRESENTING
        assert callbacks.terminal_count == 0

    def test_title_must_match_exactly(self, make_controller, surface) -> None:
        controller = make_controller()
        controller.present()

        _navigate(controller, "https://www.instagram.com/", title="Instagram - Login")
        _navigate(controller, "https://www.instagram.com/explore/", title="Instagram")

        assert "remount" not in surface.calls

    def test_stale_context_events_ignored(self, make_controller, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()
        _navigate(controller, "https://www.instagram.com/", title="Instagram")

        _navigate(controller, REDIRECT + "#access_token=STALE", context=0)
        assert callbacks.terminal_count == 0

        _navigate(controller, REDIRECT + "#access_token=FRESH", context=1)
        assert callbacks.successes == [("FRESH", {"access_token": "FRESH"})]

    def test_refresh_requires_presenting(self, make_controller) -> None:
        with pytest.raises(FlowStateError):
            make_controller().refresh()


# ---------------------------------------------------------------------------
# In-page messages
# ---------------------------------------------------------------------------


class TestMessages:
    def test_error_type_message_fails(self, make_controller, surface, callbacks) -> None:
        controller = make_controller()
        controller.present()

        controller.on_message('{"error_type": "OAuthException", "code": 400}')

        assert callbacks.failures == [{"error_type": "OAuthException", "code": 400}]
        assert controller.state == FlowState.TERMINAL
        assert surface.calls[-1] == "hide"

    def test_malformed_message_is_dropped(self, make_controller, surface, callbacks) -> None:
        controller = make_controller()
        controller.present()

        controller.on_message("not json {")

        assert controller.state == FlowState.PRESENTING
        assert callbacks.terminal_count == 0
        assert "hide" not in surface.calls

    @pytest.mark.parametrize("raw", ['{"hello": "world"}', "[1, 2]", '"text"', '{"error_type": ""}'])
    def test_messages_without_error_type_ignored(self, make_controller, callbacks, raw: str) -> None:
        controller = make_controller()
        controller.present()

        controller.on_message(raw)

        assert controller.state == FlowState.PRESENTING
        assert callbacks.terminal_count == 0


# ---------------------------------------------------------------------------
# State validation hook
# ---------------------------------------------------------------------------


class TestStateValidator:
    def test_default_trusts_any_matching_redirect(self, make_controller, callbacks) -> None:
        controller = make_controller(response_type="token")
        controller.present()
        _navigate(controller, REDIRECT + "#access_token=XYZ&state=whatever")
        assert callbacks.successes[0][0] == "XYZ"

    def test_rejection_becomes_failure(self, make_controller, callbacks, token_endpoint) -> None:
        seen: list[dict[str, str]] = []

        def validator(raw: dict[str, str]) -> bool:
            seen.append(raw)
            return raw.get("state") == "expected"

        controller = make_controller(state_validator=validator, app_secret="s3cret")
        controller.present()

        _navigate(controller, REDIRECT + "?code=BBB&state=forged")

        assert seen == [{"code": "BBB", "state": "forged"}]
        assert callbacks.failures == [{"code": "BBB", "state": "forged"}]
        assert token_endpoint.requests == []

    def test_acceptance_continues_flow(self, make_controller, callbacks) -> None:
        controller = make_controller(
            state_validator=lambda raw: raw.get("state") == "expected",
            response_type="token",
        )
        controller.present()

        _navigate(controller, REDIRECT + "#access_token=XYZ&state=expected")

        assert callbacks.successes == [("XYZ", {"access_token": "XYZ", "state": "expected"})]

    def test_raising_validator_rejects(self, make_controller, callbacks) -> None:
        def validator(raw: dict[str, str]) -> bool:
            raise ValueError("boom")

        controller = make_controller(state_validator=validator, response_type="token")
        controller.present()

        _navigate(controller, REDIRECT + "#access_token=XYZ")

        assert callbacks.failures == [{"access_token": "XYZ"}]
