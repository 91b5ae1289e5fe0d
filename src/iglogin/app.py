"""Typer application and CLI entry point for iglogin.

Commands:

* ``iglogin login`` -- run the full login in the system browser via
  :class:`~iglogin.surface.loopback.LoopbackBrowserSurface` and print the
  resulting credential to stdout.
* ``iglogin parse URL`` -- classify a redirect URL offline.
* ``iglogin authorize-url`` -- print the authorization URL a login would open.

:func:`main` is the console-script entry point declared in
``pyproject.toml``.

See Also:
    :mod:`iglogin.config`: How flags, environment and config files combine.
    :mod:`iglogin.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import asdict
from typing import Any, Optional

import typer

from iglogin import __version__
from iglogin.exceptions import IgLoginError
from iglogin.exit_codes import EXIT_GENERIC_FAILURE, EXIT_LOGIN_FAILURE
from iglogin.models import AccessToken, AuthorizationCode, LoginConfig, ResponseType
from iglogin.output import error, info, print_data, success, warning

app = typer.Typer(
    name="iglogin",
    help="Capture Instagram OAuth logins from the browser.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

_DEFAULT_TIMEOUT = 300.0


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"iglogin {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-essential output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output."),
) -> None:
    """Initialise output and logging before every sub-command."""
    from iglogin.output import OutputManager, set_output

    set_output(
        OutputManager(json_output=json_output, no_color=no_color, quiet=quiet, verbose=verbose)
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ------------------------------------------------------------------ #
# Shared option handling
# ------------------------------------------------------------------ #


def _build_config(
    config_path: Optional[str],
    app_id: Optional[str],
    app_secret: Optional[str],
    redirect_url: Optional[str],
    scopes: Optional[list[str]],
    response_type: Optional[ResponseType],
    locale: Optional[str],
    resolve_secret: bool = True,
    **extra: Any,
) -> LoginConfig:
    from iglogin.config import resolve_config

    overrides: dict[str, Any] = {
        "app_id": app_id,
        "app_secret_source": app_secret,
        "redirect_url": redirect_url,
        "scopes": scopes or None,
        "response_type": response_type.value if response_type else None,
        "locale": locale,
    }
    overrides.update(extra)
    return resolve_config(config_path, overrides, resolve_secret=resolve_secret)


def _fail(exc: IgLoginError) -> typer.Exit:
    error(str(exc))
    return typer.Exit(code=exc.exit_code)


_CONFIG_OPT = typer.Option(None, "--config", "-c", help="JSON or YAML config file.")
_APP_ID_OPT = typer.Option(None, "--app-id", help="Instagram app id.")
_SECRET_OPT = typer.Option(
    None,
    "--app-secret",
    help="App secret source: env:VAR, file:/path or prompt. Enables code exchange.",
)
_REDIRECT_OPT = typer.Option(None, "--redirect-url", help="Registered redirect URI.")
_SCOPE_OPT = typer.Option(None, "--scope", "-s", help="Scope to request (repeatable).")
_RESPONSE_TYPE_OPT = typer.Option(None, "--response-type", help="code or token.")
_LOCALE_OPT = typer.Option(None, "--locale", help="Accept-Language for the login page.")


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


@app.command("login")
def login_command(
    config_path: Optional[str] = _CONFIG_OPT,
    app_id: Optional[str] = _APP_ID_OPT,
    app_secret: Optional[str] = _SECRET_OPT,
    redirect_url: Optional[str] = _REDIRECT_OPT,
    scope: Optional[list[str]] = _SCOPE_OPT,
    response_type: Optional[ResponseType] = _RESPONSE_TYPE_OPT,
    locale: Optional[str] = _LOCALE_OPT,
    timeout: float = typer.Option(
        _DEFAULT_TIMEOUT, "--timeout", help="Seconds to wait for the login to finish."
    ),
    show_exchange_errors: bool = typer.Option(
        False,
        "--show-exchange-errors",
        help="Report token endpoint error details instead of an empty failure.",
    ),
) -> None:
    """Log in through the system browser and print the credential.

    The redirect URI must be a loopback URL with a port
    (``http://127.0.0.1:8765/callback``) registered for the app.

    Example::

        iglogin login --app-id 123 --redirect-url http://127.0.0.1:8765/cb \\
            --app-secret env:IG_APP_SECRET
    """
    try:
        config = _build_config(
            config_path,
            app_id,
            app_secret,
            redirect_url,
            scope,
            response_type,
            locale,
            expose_exchange_errors=show_exchange_errors or None,
        )
        outcome, token, raw = asyncio.run(_run_login(config, timeout))
    except IgLoginError as exc:
        raise _fail(exc) from None

    if outcome == "success":
        success("Login succeeded.")
        if raw or token is None:
            print_data({"access_token": token, "raw": raw})
        else:
            print_data(token)
        return
    if outcome == "failure":
        error("Login failed.")
        if raw:
            print_data(raw)
        raise typer.Exit(code=EXIT_LOGIN_FAILURE)
    if outcome == "timeout":
        error(f"No login result within {timeout:g} seconds.")
    else:
        warning("Login dismissed.")
    raise typer.Exit(code=EXIT_GENERIC_FAILURE)


async def _run_login(config: LoginConfig, timeout: float) -> tuple[str, Optional[str], Any]:
    """Run one login and return ``(outcome, token, raw)``.

    ``outcome`` is ``"success"``, ``"failure"``, ``"closed"`` or ``"timeout"``.
    """
    from iglogin.controller import CallbackSet, FlowController
    from iglogin.surface import LoopbackBrowserSurface

    loop = asyncio.get_running_loop()
    done: asyncio.Future[tuple[str, Optional[str], Any]] = loop.create_future()

    def _settle(result: tuple[str, Optional[str], Any]) -> None:
        if not done.done():
            done.set_result(result)

    callbacks = CallbackSet(
        success=lambda token, raw: _settle(("success", token, raw)),
        failure=lambda raw: _settle(("failure", None, raw)),
        close=lambda: _settle(("closed", None, None)),
    )
    surface = LoopbackBrowserSurface(config.redirect_url)
    controller = FlowController(config, surface, callbacks)
    try:
        url = controller.present()
        info("Opening the Instagram login in your browser...")
        info(f"If nothing opens, visit: {url}")
        return await asyncio.wait_for(done, timeout)
    except asyncio.TimeoutError:
        controller.dismiss()
        return ("timeout", None, None)
    finally:
        surface.close()


@app.command("parse")
def parse_command(url: str = typer.Argument(help="Redirect URL to classify.")) -> None:
    """Print what a redirect URL carries: access token, code or failure."""
    from iglogin.redirect import parse

    outcome = parse(url)
    if isinstance(outcome, AccessToken):
        kind = "access_token"
    elif isinstance(outcome, AuthorizationCode):
        kind = "code"
    else:
        kind = "failure"
    print_data({"type": kind, **asdict(outcome)})


@app.command("authorize-url")
def authorize_url_command(
    config_path: Optional[str] = _CONFIG_OPT,
    app_id: Optional[str] = _APP_ID_OPT,
    redirect_url: Optional[str] = _REDIRECT_OPT,
    scope: Optional[list[str]] = _SCOPE_OPT,
    response_type: Optional[ResponseType] = _RESPONSE_TYPE_OPT,
) -> None:
    """Print the authorization URL a login would open."""
    from iglogin.controller import build_authorize_url
    from iglogin.models import AuthorizationRequest

    try:
        config = _build_config(
            config_path,
            app_id,
            None,
            redirect_url,
            scope,
            response_type,
            None,
            resolve_secret=False,
        )
    except IgLoginError as exc:
        raise _fail(exc) from None
    print_data(build_authorize_url(AuthorizationRequest.from_config(config), config.authorize_url))


# ------------------------------------------------------------------ #
# Entry point
# ------------------------------------------------------------------ #


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def main() -> None:
    """CLI entry point invoked by the ``iglogin`` console script."""
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except IgLoginError as exc:
        error(str(exc))
        sys.exit(exc.exit_code)
