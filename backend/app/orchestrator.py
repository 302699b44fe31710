"""
Runs one stock workflow as one database transaction, then invalidates the cache.

    orch = TransactionOrchestrator(invalidator=CacheInvalidator(get_cache_backend()))
    sale = orch.run(create_sale, user_id=7, lines=[...]).payload

A workflow is a plain function `workflow(cur, **kwargs) -> WorkflowResult`.
It does every read, conditional write and ledger insert on the cursor it is
given and reports what changed as cache events. It never commits and never
touches the cache.

Ordering: commit first, invalidate after. An exception anywhere inside the
workflow rolls the whole transaction back (no partial stock application) and
no invalidation happens, since nothing changed. A deadlock or serialization
abort surfaces as TransactionConflict, a retryable TransientError.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from psycopg import errors as pg_errors

from .cache.invalidation import CacheEvent, CacheInvalidator
from .db import get_conn
from .errors import TransactionConflict
from .logs import json_log


@dataclass
class WorkflowResult:
    payload: Any
    events: List[CacheEvent] = field(default_factory=list)


class TransactionOrchestrator:
    def __init__(self, conn_factory: Callable = get_conn, invalidator: Optional[CacheInvalidator] = None):
        self.conn_factory = conn_factory
        self.invalidator = invalidator

    def run(self, workflow: Callable[..., WorkflowResult], **kwargs) -> WorkflowResult:
        try:
            with self.conn_factory() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        result = workflow(cur, **kwargs)
        except (pg_errors.DeadlockDetected, pg_errors.SerializationFailure) as ex:
            # Postgres picked this transaction as the loser; it is already rolled back.
            name = getattr(workflow, "__name__", "workflow")
            json_log("warning", "workflow.conflict", workflow=name, error=str(ex))
            raise TransactionConflict(f"{name} lost a concurrent update, retry", workflow=name) from ex
        # Committed. Cache failures are swallowed by the invalidator.
        if self.invalidator is not None and result.events:
            self.invalidator.apply(result.events)
        return result
