"""iglogin -- capture Instagram OAuth results from an embedded browser.

This package drives a rendering surface (an embeddable web view, or the
system browser behind a loopback listener) through Instagram's hosted
login pages, intercepts the redirect that carries the authorization
result, and turns it into an access token or a code-exchange request.

Typical usage::

    from iglogin import CallbackSet, FlowController, LoginConfig
    from iglogin.surface import LoopbackBrowserSurface

    config = LoginConfig(app_id="123", redirect_url="http://127.0.0.1:8765/cb")
    surface = LoopbackBrowserSurface(config.redirect_url)
    controller = FlowController(config, surface, CallbackSet(success=lambda token, raw: print(token)))
    controller.present()

Modules:
    redirect: Pure parser mapping a redirect URL to an outcome.
    exchange: Authorization-code exchange against the token endpoint.
    controller: The redirect-interception state machine.
    surface: Rendering surface contract and the loopback implementation.
    models: Pydantic configuration model and flow data types.
    config: Config file / environment loading and credential sources.
    exceptions: Exception hierarchy with exit-code mapping.
    app: Typer CLI entry point.
"""

from iglogin.controller import CallbackSet, FlowController, LoginCallbacks
from iglogin.models import (
    AccessToken,
    AuthorizationCode,
    AuthorizationRequest,
    ExchangeResult,
    Failure,
    FlowState,
    LoginConfig,
    NavigationEvent,
    ResponseType,
)
from iglogin.redirect import parse

__version__ = "0.3.0"

__all__ = [
    "AccessToken",
    "AuthorizationCode",
    "AuthorizationRequest",
    "CallbackSet",
    "ExchangeResult",
    "Failure",
    "FlowController",
    "FlowState",
    "LoginCallbacks",
    "LoginConfig",
    "NavigationEvent",
    "ResponseType",
    "parse",
]
