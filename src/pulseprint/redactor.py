"""Logging filter that scrubs access codes and other secrets from log records.

The resolved configuration is scanned for values whose *keys* match
``logging.redact_patterns`` (shell-style globs, case-insensitive).  Every
printer's access code is included regardless of the patterns.  Matching
values are replaced with ``[REDACTED]`` in each record's message and args.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import asdict
from typing import Any, Iterable, Optional

from pulseprint.config import AppConfig

REDACTED = "[REDACTED]"

# Shorter values would redact ordinary words and digits.
MIN_SECRET_LEN = 4


class SecretRedactingFilter(logging.Filter):
    """A :class:`logging.Filter` that never suppresses, only rewrites."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        self._pattern: Optional[re.Pattern] = None
        for value in secret_values or []:
            self.add_secret(value)

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "SecretRedactingFilter":
        values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
        values.extend(p.access_code for p in cfg.printers.values())
        return cls(values)

    def add_secret(self, value: str) -> None:
        """Register an additional secret value at runtime."""
        if not value or len(value) < MIN_SECRET_LEN or value in self._secrets:
            return
        self._secrets.add(value)
        # longest first so overlapping secrets are fully replaced
        alternatives = sorted(self._secrets, key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(s) for s in alternatives))

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        record.msg = self._redact(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._redact(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._redact(a) for a in record.args)
        return True

    def _redact(self, value: Any) -> Any:
        if isinstance(value, BaseException):
            value = str(value)
        if not isinstance(value, str):
            return value
        return self._pattern.sub(REDACTED, value)


def collect_secret_values(
    config_dict: dict[str, Any],
    patterns: list[str] | None = None,
) -> list[str]:
    """Walk a config dict and collect string values whose keys match *patterns*."""
    if not patterns:
        return []
    lowered = [p.lower() for p in patterns]
    found: list[str] = []

    def _walk(obj: Any) -> None:
        if isinstance(obj, dict):
            for key, val in obj.items():
                if isinstance(val, str) and any(
                    fnmatch.fnmatch(str(key).lower(), p) for p in lowered
                ):
                    found.append(val)
                _walk(val)
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                _walk(item)

    _walk(config_dict)
    return found
