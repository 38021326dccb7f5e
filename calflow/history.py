from __future__ import annotations

import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from calflow.errors import PersistenceFailed
from calflow.models import History

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 10000


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, int(limit)))


class HistoryRecorder:
    """Append-only audit log of flow executions, updates and deletions.

    ``record`` is best effort: a failed write is logged and reported through
    the return value, never raised, so the caller's outcome stands on its own.
    """

    def __init__(self, collection: Collection) -> None:
        self.collection = collection

    def create_indexes(self) -> None:
        try:
            self.collection.create_index([("flow-id", ASCENDING), ("timestamp", DESCENDING)])
        except PyMongoError as exc:
            raise PersistenceFailed(f"cannot create history indexes: {exc}") from exc

    def record(self, entry: History) -> bool:
        try:
            self.collection.insert_one(entry.to_document())
        except Exception as exc:
            logger.warning("cannot save %s history: %s", str(entry.action).upper(), exc)
            return False
        return True

    def recent(self, flow_id: str, limit: int | None = DEFAULT_LIMIT) -> list[History]:
        try:
            cursor = (
                self.collection.find({"flow-id": flow_id}, {"_id": 0})
                .sort("timestamp", DESCENDING)
                .limit(clamp_limit(limit))
            )
            documents = list(cursor)
        except PyMongoError as exc:
            raise PersistenceFailed(f"cannot load history: {exc}") from exc
        return [History.model_validate(doc) for doc in documents]
