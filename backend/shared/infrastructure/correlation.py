"""
Recompute-pass correlation.

Every reconciliation pass gets a short id that is attached to all log lines
emitted while it runs, including the ones logged by exceptions on construction.
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

# Context variable for the active pass id (thread- and task-safe)
pass_id_var: ContextVar[str] = ContextVar("pass_id", default="")


def get_pass_id() -> str:
    """Get the id of the pass currently running, or an empty string."""
    return pass_id_var.get()


@contextmanager
def recompute_pass(pass_id: str | None = None) -> Iterator[str]:
    """
    Bind a pass id for the duration of the block.

    Usage:
        with recompute_pass() as pass_id:
            node.run_once()
    """
    token = pass_id_var.set(pass_id or uuid.uuid4().hex)
    try:
        yield pass_id_var.get()
    finally:
        pass_id_var.reset(token)


class CorrelationIdFilter:
    """
    Logging filter that adds pass_id to log records.

    Usage:
        import logging
        handler = logging.StreamHandler()
        handler.addFilter(CorrelationIdFilter())
    """

    def filter(self, record) -> bool:
        record.pass_id = pass_id_var.get() or "-"
        return True
