"""Abstract rendering surface and the listener it reports to.

A *rendering surface* is whatever shows the provider's login pages: an
embedded web view in a GUI host, or the system browser behind a loopback
listener (:mod:`iglogin.surface.loopback`). The flow controller only
needs the handful of operations declared on :class:`RenderingSurface`;
presentation details (modal chrome, close buttons, styling) stay with
the host.

Surfaces deliver three kinds of events to a bound
:class:`SurfaceListener`, one at a time:

- navigation ticks and load errors, both as
  :class:`~iglogin.models.NavigationEvent`;
- raw in-page messages (strings posted by the page to the host).

Every navigation context (the initial load, and each
:meth:`RenderingSurface.remount`) gets a new integer id. Surfaces stamp
events with the id of the context that produced them so late events from
a discarded context can be recognised and ignored.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Protocol

from iglogin.models import NavigationEvent


class SurfaceListener(Protocol):
    """Receiver of surface events. :class:`~iglogin.controller.FlowController` implements it."""

    async def on_navigation(self, event: NavigationEvent) -> None: ...

    async def on_error(self, event: NavigationEvent) -> None: ...

    def on_message(self, raw: str) -> None: ...


class RenderingSurface(ABC):
    """Base class for rendering surfaces.

    Subclasses implement the imperative operations; event delivery goes
    through :attr:`listener`, which the controller sets with :meth:`bind`.
    """

    def __init__(self) -> None:
        self._listener: Optional[SurfaceListener] = None
        self._context = 0

    @property
    def listener(self) -> Optional[SurfaceListener]:
        return self._listener

    @property
    def context(self) -> int:
        """Id of the current navigation context."""
        return self._context

    def bind(self, listener: SurfaceListener) -> None:
        """Attach the object that receives navigation and message events."""
        self._listener = listener

    @abstractmethod
    def load(self, url: str, headers: dict[str, str], *, incognito: bool = False) -> None:
        """Start loading *url* with the extra request *headers*.

        Args:
            url: Fully built authorization URL.
            headers: Extra request headers, e.g. ``Accept-Language``.
            incognito: Request a private session without stored cookies,
                where the surface supports it.
        """
        ...

    @abstractmethod
    def stop_loading(self) -> None:
        """Abort any in-flight page load."""
        ...

    @abstractmethod
    def show(self) -> None:
        ...

    @abstractmethod
    def hide(self) -> None:
        ...

    def remount(self) -> int:
        """Discard the current navigation context and start a fresh one.

        The default implementation only advances the context id;
        subclasses reload their content after calling ``super().remount()``.

        Returns:
            The id of the new context.
        """
        self._context += 1
        return self._context
