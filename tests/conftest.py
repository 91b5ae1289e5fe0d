"""Shared test fixtures for iglogin.

Provides a recording rendering surface, recording host callbacks, a
token-endpoint double built on :class:`httpx.MockTransport`, and a
factory for wired-up :class:`~iglogin.controller.FlowController`
instances. These fixtures are discovered by pytest automatically.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import httpx
import pytest

from iglogin.controller import FlowController
from iglogin.exchange import CodeExchanger
from iglogin.models import LoginConfig
from iglogin.output import reset_output
from iglogin.surface.base import RenderingSurface

REDIRECT = "https://example.com/auth/callback"
TOKEN_URL = "https://api.instagram.com/oauth/access_token"


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    Its Rich consoles hold on to the streams that were current when it
    was created; CliRunner swaps those per invocation.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


class FakeSurface(RenderingSurface):
    """Surface that records every call the controller makes."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[str] = []
        self.loaded: list[tuple[str, dict[str, str], bool]] = []
        self.visible = False

    def load(self, url: str, headers: dict[str, str], *, incognito: bool = False) -> None:
        self.calls.append("load")
        self.loaded.append((url, dict(headers), incognito))

    def stop_loading(self) -> None:
        self.calls.append("stop_loading")

    def show(self) -> None:
        self.calls.append("show")
        self.visible = True

    def hide(self) -> None:
        self.calls.append("hide")
        self.visible = False

    def remount(self) -> int:
        self.calls.append("remount")
        return super().remount()


class RecordingCallbacks:
    """Host callbacks that remember what fired."""

    def __init__(self) -> None:
        self.successes: list[tuple[str, Optional[dict[str, Any]]]] = []
        self.failures: list[dict[str, Any]] = []
        self.closes = 0

    def on_login_success(self, token: str, raw: Optional[dict[str, Any]] = None) -> None:
        self.successes.append((token, raw))

    def on_login_failure(self, raw: dict[str, Any]) -> None:
        self.failures.append(raw)

    def on_close(self) -> None:
        self.closes += 1

    @property
    def terminal_count(self) -> int:
        return len(self.successes) + len(self.failures)


class TokenEndpoint:
    """Token endpoint double; records the form bodies it receives."""

    def __init__(
        self,
        body: Any = None,
        status_code: int = 200,
        error: Optional[Exception] = None,
    ) -> None:
        self.body = {"access_token": "ZZZ"} if body is None else body
        self.status_code = status_code
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status_code, json=self.body)
        return httpx.Response(self.status_code, text=str(self.body))

    def form(self, index: int = 0) -> dict[str, str]:
        """Decode the form body of the *index*-th request."""
        from urllib.parse import parse_qsl

        return dict(parse_qsl(self.requests[index].content.decode()))

    def exchanger(self, token_url: str = TOKEN_URL) -> CodeExchanger:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return CodeExchanger(token_url, client=client)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_config(**kwargs: Any) -> LoginConfig:
    defaults: dict[str, Any] = {
        "app_id": "app-123",
        "redirect_url": REDIRECT,
        "scopes": ["user_profile", "user_media"],
    }
    defaults.update(kwargs)
    return LoginConfig(**defaults)


@pytest.fixture()
def surface() -> FakeSurface:
    return FakeSurface()


@pytest.fixture()
def callbacks() -> RecordingCallbacks:
    return RecordingCallbacks()


@pytest.fixture()
def token_endpoint() -> TokenEndpoint:
    return TokenEndpoint()


@pytest.fixture()
def make_controller(
    surface: FakeSurface,
    callbacks: RecordingCallbacks,
    token_endpoint: TokenEndpoint,
) -> Callable[..., FlowController]:
    """Build a controller wired to the fake surface, recorder and token endpoint."""

    def _make(
        state_validator: Optional[Callable[[dict[str, str]], bool]] = None,
        **config_kwargs: Any,
    ) -> FlowController:
        return FlowController(
            make_config(**config_kwargs),
            surface,
            callbacks,
            exchanger=token_endpoint.exchanger(),
            state_validator=state_validator,
        )

    return _make
