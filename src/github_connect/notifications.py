import logging
from collections import deque
from typing import Deque, List, Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Toast(BaseModel):
    title: str
    description: str = ''
    variant: Literal['default', 'destructive'] = 'default'


class ToastLog:
    """Keeps the most recent notifications for the UI to pick up."""

    def __init__(self, limit: int = 50):
        self._toasts: Deque[Toast] = deque(maxlen=limit)

    def __call__(self, title: str, description: str = '', variant: str = 'default') -> Toast:
        toast = Toast(title=title, description=description, variant=variant)
        self._toasts.append(toast)
        log = logger.warning if variant == 'destructive' else logger.info
        log("%s: %s", title, description)
        return toast

    @property
    def toasts(self) -> List[Toast]:
        return list(self._toasts)

    @property
    def last(self):
        return self._toasts[-1] if self._toasts else None
