"""
Repository Layer.

SqlDeclarationStore is the reference implementation of the engine's
persistence contract.
"""

from .sql_store import SqlDeclarationStore, open_store, write_outbox_event

__all__ = ["SqlDeclarationStore", "open_store", "write_outbox_event"]
