"""Environment parsing helpers for consistent numeric and secret handling."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


def get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.split("#")[0].strip())
    except ValueError:
        return default


def get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.split("#")[0].strip())
    except ValueError:
        return default


def get_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def read_secret(value_var: str, file_var: str) -> Optional[str]:
    """Read a secret from `value_var`, or from the file named by `file_var`."""
    value = get_str(value_var)
    if value:
        return value
    path = get_str(file_var)
    if path:
        return Path(path).read_text(encoding="utf-8").strip()
    return None
