"""
Small helpers shared by the core modules: clock, base64, log masking.
"""

import base64
import time


def now_epoch() -> int:
    """Current Unix time in whole seconds (the ledger's time unit)."""
    return int(time.time())


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode('ascii'))


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """Replace all but the last `visible_chars` characters with '*' for logging."""
    hidden = len(value) - visible_chars if len(value) > visible_chars else len(value)
    return '*' * hidden + value[hidden:]
