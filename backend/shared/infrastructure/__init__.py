"""
Infrastructure module: database sessions and pass correlation.

Provides:
- Database sessions and transactions (db.py)
- Recompute-pass correlation ids for logging (correlation.py)
"""

from shared.infrastructure.db import (
    get_engine,
    get_session_factory,
    get_db_context,
    safe_commit,
)
from shared.infrastructure.correlation import (
    CorrelationIdFilter,
    get_pass_id,
    recompute_pass,
)

__all__ = [
    # db
    "get_engine",
    "get_session_factory",
    "get_db_context",
    "safe_commit",
    # correlation
    "CorrelationIdFilter",
    "get_pass_id",
    "recompute_pass",
]
