from typing import Optional

from fastapi import Depends, Header, HTTPException

from .cache.backends import CacheBackend, get_cache_backend
from .cache.invalidation import CacheInvalidator
from .cache.keys import KeySpace, default_keyspace
from .db import get_conn
from .orchestrator import TransactionOrchestrator


def get_current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    # Authentication happens upstream; we only resolve the acting user.
    raw = (x_user_id or "").strip()
    if not raw:
        raise HTTPException(status_code=401, detail="missing user")
    try:
        user_id = int(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid user")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, email, is_active
                FROM users
                WHERE id = %s
                """,
                (user_id,),
            )
            row = cur.fetchone()
    if not row or not row["is_active"]:
        raise HTTPException(status_code=401, detail="invalid user")
    return {"user_id": row["id"], "email": row["email"]}


def get_cache() -> CacheBackend:
    return get_cache_backend()


def get_keyspace() -> KeySpace:
    return default_keyspace()


def get_orchestrator(cache: CacheBackend = Depends(get_cache), keyspace: KeySpace = Depends(get_keyspace)) -> TransactionOrchestrator:
    return TransactionOrchestrator(conn_factory=get_conn, invalidator=CacheInvalidator(cache, keyspace))
