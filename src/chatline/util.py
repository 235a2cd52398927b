from __future__ import annotations

import secrets
import time


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    # hex keeps ids free of "-" so joined conversation ids stay unambiguous
    return f"{prefix}_{secrets.token_hex(12)}"
