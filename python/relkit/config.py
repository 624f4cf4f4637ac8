"""Engine configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any


@dataclass
class EngineConfig:
    """Settings shared by a connection pool and the sessions built on it.

    Values can be given directly, loaded from a mapping, or read from the
    environment with :meth:`from_env`.

    Example:
        >>> config = EngineConfig.from_env()
        >>> pool = await create_engine(config.url, config=config)
    """

    url: str = "sqlite::memory:"
    """Database URL (``postgresql://...``, ``sqlite:///path`` or ``sqlite::memory:``)."""

    min_connections: int = 1
    """Connections opened eagerly when the pool starts."""

    max_connections: int = 10
    """Upper bound on concurrently checked-out connections."""

    acquire_timeout: float | None = 30.0
    """Seconds to wait for a free connection before failing (``None`` waits forever)."""

    transaction_attempts: int = 3
    """Default attempts for ``AsyncSession.transaction()`` on deadlock/serialization conflicts."""

    strict_loading: bool = False
    """Raise ``LazyAccessViolation`` instead of lazily loading relations."""

    chunk_size: int = 1000
    """Default page size for ``chunk``/``lazy`` iteration."""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> EngineConfig:
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls, prefix: str = "RELKIT_", environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Read settings from environment variables.

        ``{prefix}DATABASE_URL`` (or plain ``DATABASE_URL``) sets the URL; every
        other field maps to ``{prefix}{FIELD_NAME}`` in upper case.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        url = env.get(f"{prefix}DATABASE_URL") or env.get("DATABASE_URL")
        if url:
            values["url"] = url

        for f in fields(cls):
            if f.name == "url":
                continue
            raw = env.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _coerce(raw, f.default)

        return cls(**values)


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float) or default is None:
        if raw.strip().lower() in {"", "none"}:
            return None
        return float(raw)
    return raw
