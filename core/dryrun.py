from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional


class DryRunInterceptor:
    """Single gate for every mutating call against a download client or Arr instance.

    When enabled, the wrapped call is logged and skipped; callers get ``None`` back
    and carry on as if it had succeeded.
    """

    def __init__(self, enabled: bool = False) -> None:
        self.enabled = enabled

    async def intercept(self, action: Callable[..., Awaitable[Any]], *args, name: Optional[str] = None, **kwargs) -> Any:
        label = name or getattr(action, '__name__', repr(action))
        if self.enabled:
            logging.info(f'[DRY RUN] skipping method: {label}')
            return None
        return await action(*args, **kwargs)
