from __future__ import annotations

import re
from typing import Any, Optional

_SIZE_UNITS = {
    'b': 1,
    'kb': 1024,
    'mb': 1024 ** 2,
    'gb': 1024 ** 3,
    'tb': 1024 ** 4,
}
_SIZE_RE = re.compile(r'^\s*([0-9]*\.?[0-9]+)\s*([kmgt]?b)?\s*$', re.IGNORECASE)


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')


def parse_size(value: Any) -> int:
    """Parse '1.5MB', '100 KB', '2gb' or a plain number of bytes. Empty or invalid input is 0."""
    if value is None or value == '':
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    m = _SIZE_RE.match(str(value))
    if not m:
        return 0
    number = float(m.group(1))
    unit = (m.group(2) or 'b').lower()
    return int(number * _SIZE_UNITS[unit])


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def category_from_path(path: Optional[str]) -> Optional[str]:
    # Transmission has no categories; the last directory of the download dir stands in for one
    if not path:
        return None
    trimmed = path.replace('\\', '/').rstrip('/')
    if not trimmed:
        return None
    return trimmed.rsplit('/', 1)[-1] or None
