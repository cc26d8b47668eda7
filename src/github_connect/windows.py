"""
Minimal window model: origins, openers, popups and postMessage.

The orchestrator (opener) and the callback page (popup) never share state
except through these windows, the session store and the `state` token.
"""
import asyncio
import inspect
import logging
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

POPUP_WIDTH = 600
POPUP_HEIGHT = 700


@dataclass
class MessageEvent:
    origin: str
    data: Any
    source: Optional['Window'] = None


@dataclass
class ScreenGeometry:
    x: int = 0
    y: int = 0
    outer_width: int = 1280
    outer_height: int = 800


def popup_features(screen: ScreenGeometry, width: int = POPUP_WIDTH, height: int = POPUP_HEIGHT) -> str:
    left = screen.x + (screen.outer_width - width) // 2
    top = screen.y + (screen.outer_height - height) // 2
    return f"width={width},height={height},left={left},top={top}"


class Window:

    def __init__(self, origin: str, url: str = '', opener: Optional['Window'] = None,
                 name: Optional[str] = None, screen: Optional[ScreenGeometry] = None):
        self.origin = origin.rstrip('/')
        self.url = url
        self.opener = opener
        self.name = name
        self.screen = screen or ScreenGeometry()
        self._closed = False
        self._listeners: List[Callable[[MessageEvent], Any]] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def navigate(self, url: str) -> None:
        self.url = url

    def add_message_listener(self, listener: Callable[[MessageEvent], Any]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_message_listener(self, listener: Callable[[MessageEvent], Any]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def post_message(self, data: Any, target_origin: str, source: Optional['Window'] = None) -> None:
        """
        Deliver `data` to this window's listeners. Like the browser, the message
        is dropped when `target_origin` is not this window's origin. A listener
        may return a coroutine; it is scheduled on the running loop.
        """
        if target_origin != '*' and target_origin.rstrip('/') != self.origin:
            logger.debug("Dropping message for %s, window origin is %s", target_origin, self.origin)
            return
        event = MessageEvent(origin=source.origin if source else self.origin, data=data, source=source)
        for listener in list(self._listeners):
            result = listener(event)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until listener work triggered by posted messages has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class BrowserPopupLauncher:
    """
    Opens popups in the user's browser. The returned Window stands for the
    tab: the callback page closes it, or the orchestrator does on cancel.
    """

    def __init__(self, opener: Window, open_url: Callable[[str], bool] = None):
        self.opener = opener
        self._open_url = open_url or (lambda url: webbrowser.open(url, new=1))
        self.active: Optional[Window] = None

    def open(self, url: str, name: str, features: str = '') -> Optional[Window]:
        try:
            opened = self._open_url(url)
        except webbrowser.Error as e:
            logger.warning("Browser refused to open %s: %s", name, e)
            opened = False
        if not opened:
            return None
        logger.debug("Opened %s (%s)", name, features)
        # after GitHub redirects back, the popup is on our own origin
        self.active = Window(origin=self.opener.origin, url=url, opener=self.opener, name=name)
        return self.active

    def current_popup(self) -> Optional[Window]:
        if self.active is not None and not self.active.closed:
            return self.active
        return None
