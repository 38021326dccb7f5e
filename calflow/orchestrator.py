from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from calflow.auth import AuthorizationGate
from calflow.calendar_codec import parse_calendar, serialize_calendar
from calflow.engine import Engine, FlowContext, Profile
from calflow.errors import EngineError, ExecutionFailed, InvalidProfile, PersistenceFailed
from calflow.flow_store import FlowStore, prepare_flow
from calflow.history import HistoryRecorder
from calflow.models import (
    Flow,
    History,
    HistoryAction,
    UpsertResult,
    effective_cache_duration,
    utc_now,
)
from calflow.source_cache import SourceCache

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    calendar: str
    debug_messages: list[str]


class ExecutionOrchestrator:
    """Runs stored flows and mutates them, auditing every outcome.

    Execution goes lookup, validation, source acquisition, parsing, rule
    evaluation, history, response. The first failing stage ends the run.
    History is written once the outcome is known and never changes it.
    """

    def __init__(
        self,
        flow_store: FlowStore,
        history: HistoryRecorder,
        source_cache: SourceCache,
        engine: Engine,
        clock: Callable = utc_now,
        gate: AuthorizationGate | None = None,
    ) -> None:
        self.flow_store = flow_store
        self.history = history
        self.source_cache = source_cache
        self.engine = engine
        self.gate = gate or AuthorizationGate()
        self._clock = clock

    def _record(
        self,
        *,
        flow_id: str,
        address: str,
        success: bool,
        debug: list[str],
        action: HistoryAction,
    ) -> None:
        self.history.record(
            History(
                flow_id=flow_id,
                address=address,
                timestamp=self._clock(),
                success=success,
                debug=debug,
                action=action,
            )
        )

    def execute(self, flow_id: str, *, address: str = "", verbose: bool = False, debug: bool = True) -> ExecutionResult:
        flow = self.flow_store.find_by_id(flow_id)
        if not flow.source.strip():
            raise InvalidProfile("`source` required")

        body = self.source_cache.get(flow.source, effective_cache_duration(flow.cache_duration))
        calendar = parse_calendar(body)

        context = FlowContext(
            profile=Profile(
                name=flow.name,
                source=flow.source,
                cache_duration=flow.cache_duration,
                steps=flow.steps,
            ),
            enable_debug=debug,
            verbose=verbose,
        )
        error: Exception | None = None
        try:
            self.engine.evaluate(context, flow.steps, calendar)
        except EngineError as exc:
            error = exc
        except Exception as exc:
            logger.exception("flow %s crashed during evaluation", flow_id)
            error = exc

        debug_messages = [str(message) for message in context.debugs]
        self._record(
            flow_id=flow_id,
            address=address,
            success=error is None,
            debug=debug_messages,
            action=HistoryAction.EXECUTE,
        )
        if error is not None:
            raise ExecutionFailed(f"failed to run flow ({error})") from error

        return ExecutionResult(calendar=serialize_calendar(calendar), debug_messages=debug_messages)

    def update(self, flow: Flow, *, caller_id: str, address: str = "") -> UpsertResult:
        prepared = prepare_flow(flow, caller_id)
        self.gate.require_write(caller_id, prepared)
        try:
            result = self.flow_store.upsert(prepared)
        except PersistenceFailed as exc:
            self._record(
                flow_id=prepared.flow_id,
                address=address,
                success=False,
                debug=[exc.message],
                action=HistoryAction.UPDATE,
            )
            raise
        self._record(
            flow_id=prepared.flow_id,
            address=address,
            success=True,
            debug=[result.message()],
            action=HistoryAction.UPDATE,
        )
        return result

    def delete(self, flow_id: str, *, caller_id: str, address: str = "") -> int:
        try:
            deleted = self.flow_store.delete(flow_id, user_id=caller_id)
        except PersistenceFailed as exc:
            self._record(
                flow_id=flow_id,
                address=address,
                success=False,
                debug=[exc.message],
                action=HistoryAction.DELETE,
            )
            raise
        self._record(
            flow_id=flow_id,
            address=address,
            success=True,
            debug=[f"deleted {deleted}"],
            action=HistoryAction.DELETE,
        )
        return deleted
