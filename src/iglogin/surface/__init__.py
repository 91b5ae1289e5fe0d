"""Rendering surfaces the flow controller can drive.

- :class:`RenderingSurface` -- abstract base every surface extends.
- :class:`SurfaceListener` -- the event receiver protocol.
- :class:`LoopbackBrowserSurface` -- system browser plus a local redirect
  listener, used by the ``iglogin login`` command.
"""

from iglogin.surface.base import RenderingSurface, SurfaceListener
from iglogin.surface.loopback import LoopbackBrowserSurface

__all__ = [
    "LoopbackBrowserSurface",
    "RenderingSurface",
    "SurfaceListener",
]
