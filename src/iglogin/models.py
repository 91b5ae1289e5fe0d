"""Canonical models shared across iglogin modules.

The models fall into two groups:

**Configuration models** -- Pydantic models validated from config files,
environment variables and CLI flags:
    :class:`ResponseType`, :class:`LoginConfig` and
    :class:`AuthorizationRequest`.

**Flow data** -- small frozen dataclasses produced and consumed while a
login is in progress:
    :class:`NavigationEvent`, the :data:`RedirectOutcome` variants
    (:class:`AccessToken`, :class:`AuthorizationCode`, :class:`Failure`),
    :class:`ExchangeResult` and the :class:`FlowState` enum.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

INSTAGRAM_AUTHORIZE_URL = "https://api.instagram.com/oauth/authorize/"
INSTAGRAM_TOKEN_URL = "https://api.instagram.com/oauth/access_token"
INSTAGRAM_HOME_URL = "https://www.instagram.com/"
INSTAGRAM_HOME_TITLE = "Instagram"


# --- Configuration ---


class ResponseType(str, enum.Enum):
    """OAuth ``response_type`` requested from the provider."""

    CODE = "code"
    TOKEN = "token"


class LoginConfig(BaseModel):
    """Everything a host supplies to run one kind of login.

    Mirrors the configuration surface of an embedded login component:
    the registered app, where the provider should redirect, which scopes to
    ask for and how the result is returned. The provider endpoints and the
    home-page heuristic are configurable so tests and staging setups can
    point elsewhere.

    Example::

        LoginConfig(
            app_id="1234567890",
            redirect_url="http://127.0.0.1:8765/callback",
            response_type="token",
        )
    """

    model_config = ConfigDict(extra="forbid")

    app_id: str = Field(description="Instagram app (client) id")
    app_secret: Optional[str] = Field(
        default=None,
        description="App secret; when set, codes are exchanged at the token endpoint",
    )
    redirect_url: str = Field(
        default="https://google.com",
        description="Redirect URI prefix that triggers interception",
    )
    scopes: list[str] = Field(
        default_factory=lambda: ["user_profile", "user_media"]
    )
    response_type: ResponseType = ResponseType.CODE
    locale: str = Field(default="en", description="Sent as Accept-Language")
    incognito: bool = Field(
        default=False, description="Ask the surface for a private session"
    )
    authorize_url: str = INSTAGRAM_AUTHORIZE_URL
    token_url: str = INSTAGRAM_TOKEN_URL
    home_page_url: str = INSTAGRAM_HOME_URL
    home_page_title: str = INSTAGRAM_HOME_TITLE
    expose_exchange_errors: bool = Field(
        default=False,
        description="Pass exchange error detail to the failure callback "
        "instead of an empty payload",
    )
    exchange_timeout: Optional[float] = Field(
        default=None,
        description="Seconds before the code exchange gives up (None: wait forever)",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [s.strip() for s in value.split(",") if s.strip()]
        return value


class AuthorizationRequest(BaseModel):
    """Immutable parameters of a single authorization attempt."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    redirect_uri: str
    scopes: tuple[str, ...] = ()
    response_type: ResponseType = ResponseType.CODE
    locale: str = "en"
    app_secret: Optional[str] = None

    @field_validator("scopes", mode="after")
    @classmethod
    def _dedupe_scopes(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        # Scopes form a set, but the order the host gave is what goes on the wire.
        return tuple(dict.fromkeys(value))

    @classmethod
    def from_config(cls, config: LoginConfig) -> AuthorizationRequest:
        """Build the request a :class:`LoginConfig` describes."""
        return cls(
            client_id=config.app_id,
            redirect_uri=config.redirect_url,
            scopes=tuple(config.scopes),
            response_type=config.response_type,
            locale=config.locale,
            app_secret=config.app_secret,
        )

    @property
    def is_public_client(self) -> bool:
        """True when a returned code is handed to the host instead of exchanged."""
        return self.response_type == ResponseType.CODE and not self.app_secret


# --- Flow data ---


class FlowState(str, enum.Enum):
    """Lifecycle of one login attempt."""

    IDLE = "idle"
    PRESENTING = "presenting"
    INTERCEPTED = "intercepted"
    EXCHANGING = "exchanging"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class NavigationEvent:
    """One navigation or load-error tick reported by a rendering surface.

    Attributes:
        url: The URL the surface navigated to (or failed to load).
        title: Page title, empty when unknown.
        is_loading: Whether the page is still loading.
        context: Navigation-context id the surface stamped on the event.
            ``None`` means the event belongs to whatever context is current.
    """

    url: str
    title: str = ""
    is_loading: bool = False
    context: Optional[int] = None


@dataclass(frozen=True)
class AccessToken:
    """Implicit-flow result: the token came back in the redirect."""

    token: str
    raw: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthorizationCode:
    """Code-flow result, with the provider's ``#_`` suffix already removed."""

    code: str


@dataclass(frozen=True)
class Failure:
    """Anything else the provider redirected with, usually ``error*`` keys."""

    raw: dict[str, str] = field(default_factory=dict)


RedirectOutcome = Union[AccessToken, AuthorizationCode, Failure]


@dataclass(frozen=True)
class ExchangeResult:
    """Successful token-endpoint response.

    ``access_token`` is ``None`` when a 2xx body does not carry one; the
    body is still handed to the host in ``raw``.
    """

    access_token: Optional[str]
    raw: dict[str, Any] = field(default_factory=dict)
