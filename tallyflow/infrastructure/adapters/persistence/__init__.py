"""SQL persistence for tally state and the processed set."""

from tallyflow.infrastructure.adapters.persistence.schema import (
    create_schema,
    drop_schema,
    metadata,
)
from tallyflow.infrastructure.adapters.persistence.sql_tally_store import SqlTallyStore

__all__ = ["SqlTallyStore", "create_schema", "drop_schema", "metadata"]
