"""Rule evaluation over parsed calendars.

The service ships the step interpreter only. Deployments that need concrete
actions or a condition language build a ``StepEngine``, call
``register_action`` for each action identifier, and hand it to
``AppContext.from_config`` or ``create_app(engine=...)``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

from icalendar import Calendar as ICalendar

from calflow.calendar_codec import events
from calflow.errors import EngineError
from calflow.models import ActionStep, ConditionStep, DebugStep, FlowStep, ReturnStep

Action = Callable[[Any, dict[str, Any], "FlowContext"], None]
ExpressionEvaluator = Callable[[str, Any, "FlowContext"], bool]


@dataclass
class Profile:
    name: str
    source: str
    cache_duration: timedelta
    steps: list[FlowStep] = field(default_factory=list)


@dataclass
class FlowContext:
    profile: Profile
    context: dict[str, Any] = field(default_factory=dict)
    debugs: list[Any] = field(default_factory=list)
    enable_debug: bool = True
    verbose: bool = False

    def debug(self, message: Any) -> None:
        if self.enable_debug:
            self.debugs.append(message)

    def trace(self, message: Any) -> None:
        if self.verbose:
            self.debug(message)


class Engine(Protocol):
    def evaluate(self, context: FlowContext, steps: Sequence[FlowStep], calendar: ICalendar) -> None:
        ...


class StepEngine:
    """Runs a flow's steps against every event of a calendar.

    The calendar is modified in place; a ``ReturnStep`` with a false value
    drops the current event. Concrete actions and the condition expression
    language are plugged in by the caller.
    """

    def __init__(
        self,
        actions: dict[str, Action] | None = None,
        expression_evaluator: ExpressionEvaluator | None = None,
    ) -> None:
        self.actions: dict[str, Action] = dict(actions or {})
        self.expression_evaluator = expression_evaluator

    def register_action(self, identifier: str, action: Action) -> None:
        self.actions[identifier] = action

    def evaluate(self, context: FlowContext, steps: Sequence[FlowStep], calendar: ICalendar) -> None:
        for event in events(calendar):
            keep = self._run(context, steps, event)
            if keep is False:
                calendar.subcomponents.remove(event)
                context.trace(f"removed event {event.get('UID', '')}")

    def _run(self, context: FlowContext, steps: Iterable[FlowStep], event: Any) -> Optional[bool]:
        for step in steps:
            if isinstance(step, DebugStep):
                context.debug(step.message)
            elif isinstance(step, ReturnStep):
                return step.value
            elif isinstance(step, ActionStep):
                self._invoke(context, step, event)
            elif isinstance(step, ConditionStep):
                branch = step.then_steps if self._check(context, step, event) else step.else_steps
                result = self._run(context, branch, event)
                if result is not None:
                    return result
            else:
                raise EngineError(f"unsupported step: {type(step).__name__}")
        return None

    def _invoke(self, context: FlowContext, step: ActionStep, event: Any) -> None:
        action = self.actions.get(step.identifier)
        if action is None:
            raise EngineError(f"action '{step.identifier}' not found")
        context.trace(f"running action {step.identifier}")
        action(event, step.arguments, context)

    def _check(self, context: FlowContext, step: ConditionStep, event: Any) -> bool:
        if not step.expressions:
            return True
        if self.expression_evaluator is None:
            raise EngineError("conditions require an expression evaluator")
        results = (self.expression_evaluator(expr, event, context) for expr in step.expressions)
        matched = all(results) if step.operator == "and" else any(results)
        context.trace(f"condition {step.operator} {step.expressions} -> {matched}")
        return matched
