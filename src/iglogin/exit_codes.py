"""Numeric process exit codes for the ``iglogin`` CLI.

Each constant maps to a failure category and is referenced by the
corresponding :class:`~iglogin.exceptions.IgLoginError` subclass, so
shell wrappers can tell a rejected login from a bad invocation without
parsing stderr.

Example::

    $ iglogin login --config login.yaml
    $ echo $?
    3   # EXIT_LOGIN_FAILURE -- the provider or token endpoint refused
"""

EXIT_SUCCESS = 0
"""The login completed and a credential was printed."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred, or the login was dismissed / timed out."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or the flow API was misused."""

EXIT_LOGIN_FAILURE = 3
"""The provider returned an error or the code exchange failed."""

EXIT_SURFACE_ERROR = 6
"""The rendering surface could not be started (e.g. port already bound)."""
