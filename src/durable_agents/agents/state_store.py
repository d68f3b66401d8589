"""Key/value state table of one agent instance."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session

from durable_agents.storage.common import to_db_datetime, utc_now
from durable_agents.storage.sqlmodel_models import AgentStateEntry


class StateStore:
    """Small JSON values executors keep between task runs."""

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def set(self, key: str, value: Any) -> None:
        with Session(self.engine) as session:
            row = session.get(AgentStateEntry, key)
            encoded = json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
            now = to_db_datetime(self._clock())
            if row is None:
                row = AgentStateEntry(key=key, value=encoded, updated_at=now)
            else:
                row.value = encoded
                row.updated_at = now
            session.add(row)
            session.commit()

    def get(self, key: str, default: Any = None) -> Any:
        with Session(self.engine) as session:
            row = session.get(AgentStateEntry, key)
            if row is None:
                return default
            return json.loads(row.value)
