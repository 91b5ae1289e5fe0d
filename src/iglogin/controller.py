"""Redirect-interception state machine.

:class:`FlowController` owns one login attempt at a time. It tells a
:class:`~iglogin.surface.base.RenderingSurface` to load the provider's
authorization page, watches the navigation events the surface reports,
and when the surface reaches the redirect URI it parses the result and
emits exactly one terminal callback: success or failure. A user
dismissal is a third, callback-free outcome (only ``on_close`` fires).

State machine::

    IDLE --present--> PRESENTING
    PRESENTING --home page--> PRESENTING (fresh navigation context)
    PRESENTING --redirect: token--> TERMINAL (success)
    PRESENTING --redirect: code--> EXCHANGING --> TERMINAL (success | failure)
    PRESENTING --redirect: error--> TERMINAL (failure)
    PRESENTING --in-page error message--> TERMINAL (failure)
    PRESENTING | EXCHANGING --dismiss--> IDLE (on_close only)
    TERMINAL --reset--> IDLE

Events are expected one at a time on a single asyncio loop. The code
exchange is the only suspension point; events that arrive meanwhile find
the controller in ``EXCHANGING`` and are ignored, and an exchange result
that arrives after a dismissal is discarded.

Errors raised while handling events never reach the host. Provider
errors and exchange failures become failure callbacks, malformed in-page
messages are logged and dropped, and exceptions raised by the host's own
callbacks are logged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol
from urllib.parse import urlencode

from iglogin.exceptions import ExchangeError, FlowStateError
from iglogin.exchange import CodeExchanger
from iglogin.models import (
    AccessToken,
    AuthorizationCode,
    AuthorizationRequest,
    FlowState,
    LoginConfig,
    NavigationEvent,
)
from iglogin.redirect import clean_code, decode_payload, parse
from iglogin.surface.base import RenderingSurface

logger = logging.getLogger(__name__)

StateValidator = Callable[[dict[str, str]], bool]
"""Hook deciding whether an intercepted redirect's parameters are trusted."""


# --- Host callbacks ---


class LoginCallbacks(Protocol):
    """What the host is told about a login attempt."""

    def on_login_success(
        self, token: Optional[str], raw: Optional[dict[str, Any]] = None
    ) -> None: ...

    def on_login_failure(self, raw: dict[str, Any]) -> None: ...

    def on_close(self) -> None: ...


def _mask(token: Optional[str]) -> str:
    if not token:
        return "(none)"
    return token[:6] + "..." if len(token) > 6 else "***"


def _default_success(token: Optional[str], raw: Optional[dict[str, Any]] = None) -> None:
    logger.info("Login succeeded, token %s", _mask(token))


def _default_failure(raw: dict[str, Any]) -> None:
    logger.debug("Login failed: %s", raw)


def _noop() -> None:
    pass


@dataclass
class CallbackSet:
    """:class:`LoginCallbacks` assembled from plain callables.

    Attributes:
        success: Called as ``success(token, raw)``:

            * implicit flow: the token and the decoded redirect mapping;
            * exchanged code: the body's ``access_token`` and the full
              token endpoint body. The body is the primary payload; when it
              has no ``access_token`` the token is ``None`` and the body is
              still delivered;
            * public client: the cleaned code and ``None``.
        failure: Called as ``failure(raw)`` with the provider's error
            mapping, the in-page error message, or an empty dict.
        close: Called when the user dismisses the login.

    Example::

        callbacks = CallbackSet(
            success=lambda token, raw: save(token),
            failure=lambda raw: show_error(raw.get("error_description")),
        )
    """

    success: Callable[[Optional[str], Optional[dict[str, Any]]], None] = _default_success
    failure: Callable[[dict[str, Any]], None] = _default_failure
    close: Callable[[], None] = _noop

    def on_login_success(
        self, token: Optional[str], raw: Optional[dict[str, Any]] = None
    ) -> None:
        self.success(token, raw)

    def on_login_failure(self, raw: dict[str, Any]) -> None:
        self.failure(raw)

    def on_close(self) -> None:
        self.close()


def build_authorize_url(request: AuthorizationRequest, authorize_url: str) -> str:
    """Return the authorization URL for *request*.

    Scopes are joined with commas, which Instagram expects instead of the
    space separator used by most providers.
    """
    params = {
        "client_id": request.client_id,
        "redirect_uri": request.redirect_uri,
        "response_type": request.response_type.value,
        "scope": ",".join(request.scopes),
    }
    separator = "&" if "?" in authorize_url else "?"
    return authorize_url + separator + urlencode(params, safe=",")


# --- Controller ---


class FlowController:
    """Drive one login attempt at a time through a rendering surface.

    Args:
        config: Login configuration. Its endpoints, home-page heuristic
            and exchange settings apply to every attempt.
        surface: The surface to drive. The controller binds itself as the
            surface's listener.
        callbacks: Receiver of the terminal outcome. Defaults to a
            :class:`CallbackSet` that only logs.
        exchanger: Code exchanger. Defaults to a
            :class:`~iglogin.exchange.CodeExchanger` for
            ``config.token_url``.
        state_validator: Optional hook called with the decoded redirect
            parameters before they are acted on. Returning ``False`` turns
            the redirect into a failure. Without a hook every redirect
            matching the redirect URI is trusted.
    """

    def __init__(
        self,
        config: LoginConfig,
        surface: RenderingSurface,
        callbacks: Optional[LoginCallbacks] = None,
        *,
        exchanger: Optional[CodeExchanger] = None,
        state_validator: Optional[StateValidator] = None,
    ) -> None:
        self._config = config
        self._surface = surface
        self._callbacks: LoginCallbacks = callbacks or CallbackSet()
        self._exchanger = exchanger or CodeExchanger(
            config.token_url, timeout=config.exchange_timeout
        )
        self._state_validator = state_validator

        self._state = FlowState.IDLE
        self._request: Optional[AuthorizationRequest] = None
        self._context: Optional[int] = None
        self._attempt = 0

        surface.bind(self)

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def context(self) -> Optional[int]:
        """Navigation context whose events are currently accepted."""
        return self._context

    @property
    def request(self) -> Optional[AuthorizationRequest]:
        return self._request

    # ------------------------------------------------------------------
    # Host-initiated operations
    # ------------------------------------------------------------------

    def present(self, request: Optional[AuthorizationRequest] = None) -> str:
        """Start a login attempt and show the provider's login page.

        A finished (``TERMINAL``) attempt is reset implicitly.

        Args:
            request: Parameters of this attempt. Built from the config
                when omitted.

        Returns:
            The authorization URL handed to the surface.

        Raises:
            FlowStateError: If an attempt is already in progress.
        """
        if self._state not in (FlowState.IDLE, FlowState.TERMINAL):
            raise FlowStateError(f"Cannot present a login while {self._state.value}")

        request = request or AuthorizationRequest.from_config(self._config)
        url = build_authorize_url(request, self._config.authorize_url)

        self._request = request
        self._attempt += 1
        self._state = FlowState.PRESENTING
        self._context = self._surface.context
        logger.debug("Presenting login attempt %d: %s", self._attempt, url)

        self._surface.load(
            url,
            {"Accept-Language": request.locale},
            incognito=self._config.incognito,
        )
        self._surface.show()
        return url

    def refresh(self) -> int:
        """Reload the login in a fresh navigation context.

        Events still in flight from the previous context are ignored from
        here on.

        Returns:
            The new context id.

        Raises:
            FlowStateError: If no login is being presented.
        """
        if self._state != FlowState.PRESENTING:
            raise FlowStateError(f"Cannot refresh a login while {self._state.value}")
        self._context = self._surface.remount()
        logger.debug("Switched to navigation context %d", self._context)
        return self._context

    def dismiss(self) -> None:
        """Cancel the attempt on the user's behalf.

        Hides the surface, notifies ``on_close`` and returns to ``IDLE``
        without a success or failure callback. An exchange request already
        in flight is not aborted, but its result is discarded.
        """
        if self._state == FlowState.IDLE:
            return
        logger.debug("Login dismissed while %s", self._state.value)
        self._surface.hide()
        self._state = FlowState.IDLE
        self._request = None
        self._context = None
        self._notify("on_close")

    def reset(self) -> None:
        """Return a finished attempt to ``IDLE``.

        Raises:
            FlowStateError: If an attempt is still running; use
                :meth:`dismiss` to cancel one.
        """
        if self._state in (FlowState.IDLE, FlowState.TERMINAL):
            self._state = FlowState.IDLE
            self._request = None
            self._context = None
            return
        raise FlowStateError(f"Cannot reset a login while {self._state.value}; dismiss it")

    # ------------------------------------------------------------------
    # Surface events
    # ------------------------------------------------------------------

    async def on_navigation(self, event: NavigationEvent) -> None:
        """Handle a navigation tick from the surface."""
        if self._state != FlowState.PRESENTING:
            logger.debug("Ignoring navigation to %s while %s", event.url, self._state.value)
            return
        if event.context is not None and event.context != self._context:
            logger.debug("Ignoring navigation from stale context %s", event.context)
            return

        if self._is_home_page(event):
            # The provider sometimes parks the session on its landing page
            # instead of redirecting; a fresh context restarts the login.
            logger.info("Landed on the provider home page, reloading login")
            self.refresh()
            return

        assert self._request is not None
        if event.url and event.url.startswith(self._request.redirect_uri):
            await self._intercept(event.url)

    async def on_error(self, event: NavigationEvent) -> None:
        """Handle a load error; surfaces report the URL that failed to load.

        A redirect URI that cannot be served (the usual case for a
        placeholder such as ``https://google.com``) still carries the
        authorization result, so load errors are inspected like
        navigations.
        """
        await self.on_navigation(event)

    def on_message(self, raw: str) -> None:
        """Handle a message the page posted to the host.

        Messages that are not JSON are logged and dropped. A JSON object
        with a truthy ``error_type`` ends the attempt with a failure while
        the login is presented.
        """
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning("Ignoring malformed in-page message: %s", exc)
            return

        if not isinstance(payload, dict) or not payload.get("error_type"):
            logger.debug("Ignoring in-page message without error_type")
            return
        if self._state != FlowState.PRESENTING:
            logger.debug("Ignoring in-page error while %s", self._state.value)
            return

        logger.info("Provider page reported %s", payload["error_type"])
        self._surface.hide()
        self._finish_failure(payload)

    # ------------------------------------------------------------------
    # Interception and exchange
    # ------------------------------------------------------------------

    async def _intercept(self, url: str) -> None:
        self._state = FlowState.INTERCEPTED
        self._surface.stop_loading()
        self._surface.hide()

        if self._state_validator is not None:
            raw = decode_payload(url)
            if not self._redirect_trusted(raw):
                self._finish_failure(raw)
                return

        outcome = parse(url)
        if isinstance(outcome, AccessToken):
            self._finish_success(outcome.token, outcome.raw)
        elif isinstance(outcome, AuthorizationCode):
            self._state = FlowState.EXCHANGING
            await self.exchange_code(outcome.code)
        else:
            logger.info("Provider redirected with an error: %s", outcome.raw)
            self._finish_failure(outcome.raw)

    def _redirect_trusted(self, raw: dict[str, str]) -> bool:
        assert self._state_validator is not None
        try:
            trusted = bool(self._state_validator(raw))
        except Exception:
            logger.exception("State validator raised; rejecting redirect")
            return False
        if not trusted:
            logger.warning("State validator rejected the redirect")
        return trusted

    async def exchange_code(self, code: str) -> None:
        """Turn an authorization code into the attempt's terminal outcome.

        Public clients (``response_type=code`` without an app secret) get
        the cleaned code itself as the credential. Otherwise the code is
        posted once to the token endpoint.

        Raises:
            FlowStateError: If the controller is not ``EXCHANGING``.
        """
        if self._state != FlowState.EXCHANGING:
            raise FlowStateError(f"Cannot exchange a code while {self._state.value}")
        assert self._request is not None
        request = self._request
        attempt = self._attempt
        code = clean_code(code)

        if request.is_public_client:
            if code:
                self._finish_success(code, None)
            else:
                logger.warning("Provider redirected with an empty authorization code")
                self._finish_failure({})
            return

        try:
            result = await self._exchanger.exchange(
                request.client_id, request.app_secret, request.redirect_uri, code
            )
        except ExchangeError as exc:
            logger.error("Authorization code exchange failed: %s", exc)
            if exc.detail:
                logger.debug("Token endpoint said: %s", exc.detail)
            if self._exchange_abandoned(attempt):
                return
            self._finish_failure(self._exchange_failure_payload(exc))
            return

        if self._exchange_abandoned(attempt):
            return
        self._finish_success(result.access_token, result.raw)

    def _exchange_abandoned(self, attempt: int) -> bool:
        if self._state == FlowState.EXCHANGING and attempt == self._attempt:
            return False
        logger.info("Discarding exchange result for abandoned attempt %d", attempt)
        return True

    def _exchange_failure_payload(self, exc: ExchangeError) -> dict[str, Any]:
        if not self._config.expose_exchange_errors:
            return {}
        payload: dict[str, Any] = {"error": "exchange_failed", "error_description": str(exc)}
        if exc.status_code is not None:
            payload["status_code"] = exc.status_code
        if exc.detail:
            payload["detail"] = exc.detail
        return payload

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------

    def _is_home_page(self, event: NavigationEvent) -> bool:
        return (
            event.title == self._config.home_page_title
            and event.url == self._config.home_page_url
        )

    def _finish_success(self, token: Optional[str], raw: Optional[dict[str, Any]]) -> None:
        self._state = FlowState.TERMINAL
        logger.debug("Login attempt %d succeeded", self._attempt)
        self._notify("on_login_success", token, raw)

    def _finish_failure(self, raw: dict[str, Any]) -> None:
        self._state = FlowState.TERMINAL
        logger.debug("Login attempt %d failed", self._attempt)
        self._notify("on_login_failure", raw)

    def _notify(self, name: str, *args: Any) -> None:
        try:
            getattr(self._callbacks, name)(*args)
        except Exception:
            logger.exception("Host callback %s raised", name)
