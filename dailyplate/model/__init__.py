from typing import Mapping, Optional

from ..infra.sql import make_async_engine
from .store import OrderStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(database_url: str,
              pool: Optional[Mapping[str, int]] = None) -> OrderStore:
    engine, SessionAsync, _, gated = make_async_engine(database_url, pool)
    return OrderStore(engine=engine, sessions=SessionAsync, gated=gated)


__all__ = ["OrderStore", "new_store"]
