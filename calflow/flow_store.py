from __future__ import annotations

import uuid
from typing import Any, Callable

from pymongo import ASCENDING
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from calflow.errors import FlowIDConflict, NotFound, PersistenceFailed
from calflow.models import Flow, FlowHead, UpsertResult, effective_cache_duration

FLOW_ID_FIELD = "flow-id"
USER_ID_FIELD = "user-id"

_HEAD_PROJECTION = {"_id": 0, "steps": 0}


def _new_flow_id() -> str:
    return str(uuid.uuid4())


def prepare_flow(flow: Flow, caller_id: str, id_factory: Callable[[], str] = _new_flow_id) -> Flow:
    """Return a copy of ``flow`` ready to be stored on behalf of ``caller_id``.

    The owner always comes from the verified caller, a missing identifier is
    generated, and the cache duration is raised to the two minute floor.
    """
    return flow.model_copy(
        update={
            "flow_id": flow.flow_id.strip() or id_factory(),
            "user_id": caller_id,
            "cache_duration": effective_cache_duration(flow.cache_duration),
        }
    )


class FlowStore:
    def __init__(self, collection: Collection) -> None:
        self.collection = collection

    def create_indexes(self) -> None:
        try:
            self.collection.create_index([(FLOW_ID_FIELD, ASCENDING)], unique=True)
            self.collection.create_index([(USER_ID_FIELD, ASCENDING)])
        except PyMongoError as exc:
            raise PersistenceFailed(f"cannot create flow indexes: {exc}") from exc

    def find_by_id(self, flow_id: str) -> Flow:
        try:
            document = self.collection.find_one({FLOW_ID_FIELD: flow_id}, {"_id": 0})
        except PyMongoError as exc:
            raise PersistenceFailed(f"cannot find flow: {exc}") from exc
        if document is None:
            raise NotFound(f"cannot find flow: {flow_id}")
        return Flow.model_validate(document)

    def _find_many(self, user_id: str, projection: dict[str, int]) -> list[dict[str, Any]]:
        try:
            return list(
                self.collection.find({USER_ID_FIELD: user_id}, projection).sort(FLOW_ID_FIELD, ASCENDING)
            )
        except PyMongoError as exc:
            raise PersistenceFailed(f"cannot list flows: {exc}") from exc

    def list_by_owner(self, user_id: str) -> list[FlowHead]:
        return [FlowHead.model_validate(doc) for doc in self._find_many(user_id, _HEAD_PROJECTION)]

    def list_flows_by_owner(self, user_id: str) -> list[Flow]:
        return [Flow.model_validate(doc) for doc in self._find_many(user_id, {"_id": 0})]

    def upsert(self, flow: Flow) -> UpsertResult:
        if not flow.flow_id or not flow.user_id:
            raise PersistenceFailed("flow id and owner are required before writing")
        try:
            result = self.collection.update_one(
                {FLOW_ID_FIELD: flow.flow_id, USER_ID_FIELD: flow.user_id},
                {"$set": flow.to_document()},
                upsert=True,
            )
        except DuplicateKeyError as exc:
            # the unique flow-id index rejected the insert: another owner holds this id
            raise FlowIDConflict(f"flow id {flow.flow_id} is already taken") from exc
        except PyMongoError as exc:
            raise PersistenceFailed(f"cannot save flow: {exc}") from exc
        return UpsertResult(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
            upserted_count=1 if result.upserted_id is not None else 0,
        )

    def delete(self, flow_id: str, user_id: str | None = None) -> int:
        query = {FLOW_ID_FIELD: flow_id}
        if user_id is not None:
            query[USER_ID_FIELD] = user_id
        try:
            result = self.collection.delete_one(query)
        except PyMongoError as exc:
            raise PersistenceFailed(f"cannot delete flow: {exc}") from exc
        return result.deleted_count
