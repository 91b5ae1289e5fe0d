"""Exception hierarchy for iglogin.

All exceptions inherit from :class:`IgLoginError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`iglogin.exit_codes`.
The CLI entry point in :func:`iglogin.app.main` catches ``IgLoginError``
and exits with the matching code.

Errors raised while a flow is handling navigation events never reach the
host: the controller converts them into a failure callback or logs and
drops them. Only host-initiated calls (building a config, calling
:meth:`~iglogin.controller.FlowController.present` at the wrong time)
raise.

Subclass hierarchy::

    IgLoginError (exit 1)
    +-- ConfigError        (exit 1)
    +-- FlowStateError     (exit 2)
    +-- ExchangeError      (exit 3)
    +-- SurfaceError       (exit 6)
"""

from __future__ import annotations

from typing import Optional

from iglogin.exit_codes import (
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_LOGIN_FAILURE,
    EXIT_SURFACE_ERROR,
)


class IgLoginError(Exception):
    """Base exception for all iglogin errors.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(IgLoginError):
    """Raised for configuration problems (unreadable files, bad credential sources)."""

    exit_code = EXIT_GENERIC_FAILURE


class FlowStateError(IgLoginError):
    """Raised when the flow controller is driven from a state that forbids the call."""

    exit_code = EXIT_INVALID_USAGE


class ExchangeError(IgLoginError):
    """Raised when the authorization-code exchange fails.

    Covers transport errors, non-2xx responses and bodies that are not a
    JSON object.

    Args:
        message: Human-readable description, safe to log.
        status_code: HTTP status of the token endpoint response, when one
            was received.
        detail: Response body text or transport error string.
    """

    exit_code = EXIT_LOGIN_FAILURE

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class SurfaceError(IgLoginError):
    """Raised when a rendering surface cannot be started or driven."""

    exit_code = EXIT_SURFACE_ERROR
