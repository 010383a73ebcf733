from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from vaultledger.core.errors import ConfigError


def dialect_insert(session: AsyncSession, model: Any):
    # Conflict-absorbing inserts need the dialect-specific insert construct.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise ConfigError(f"on-conflict inserts are not supported for dialect {dialect}")
