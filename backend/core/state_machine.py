"""
GENERIC STATE MACHINE UTILITY

A reusable state machine for managing entity state transitions with:
- Transition registration keyed by (from_state, action)
- Guard conditions that block a transition with a named error
- Pure handlers that compute field changes without touching storage
- Invalid transition rejection carrying current state and attempted action
- Post-transition callbacks for side effects owned by collaborators

Usage:
    machine = StateMachine("payment_application")
    machine.register("draft", "submit", "submitted", submit_handler, guard=can_submit)
    machine.register("approved", "recall", "needs_review", recall_handler)

    result = machine.transition(app_doc, "submit", context={...})

Persisting the result is the caller's job; the machine never mutates the entity.
"""

from typing import Dict, Any, Optional, Callable, List, Set, Tuple
from datetime import datetime, timezone
import logging

from core.billing_errors import BillingEngineError

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateMachineError(BillingEngineError):
    """Base exception for state machine errors."""
    kind = "STATE_MACHINE_ERROR"


class InvalidTransitionError(StateMachineError):
    """Raised when an action is not reachable from the current state."""

    kind = "INVALID_TRANSITION"

    def __init__(self, entity: str, from_state: str, action: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.action = action
        self.allowed = allowed or []

        allowed_str = f" Allowed actions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: cannot '{action}' from '{from_state}'.{allowed_str}"
        super().__init__(message, {
            "entity": entity,
            "from_state": from_state,
            "action": action,
            "allowed": self.allowed
        })


class GuardConditionError(StateMachineError):
    """Raised when a guard returns (False, reason)."""

    kind = "GUARD_BLOCKED"

    def __init__(self, entity: str, from_state: str, action: str, reason: str):
        self.entity = entity
        self.from_state = from_state
        self.action = action
        self.reason = reason
        message = f"Guard blocked {entity}: '{action}' from '{from_state}': {reason}"
        super().__init__(message, {
            "entity": entity,
            "from_state": from_state,
            "action": action,
            "reason": reason
        })


class TransitionHandlerError(StateMachineError):
    """Raised when a handler fails with an unexpected exception."""

    kind = "TRANSITION_HANDLER_FAILED"

    def __init__(self, entity: str, from_state: str, action: str, original_error: Exception):
        self.entity = entity
        self.from_state = from_state
        self.action = action
        self.original_error = original_error
        message = f"Handler failed for {entity}: '{action}' from '{from_state}': {original_error}"
        super().__init__(message, {"entity": entity, "from_state": from_state, "action": action})


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Handler signature: def handler(entity, context) -> Dict[str, Any] of changes
TransitionHandler = Callable[[Any, Dict[str, Any]], Dict[str, Any]]

# Guard signature: def guard(entity, context) -> Tuple[bool, str]
# Guards may also raise a named BillingEngineError directly.
GuardCondition = Callable[[Any, Dict[str, Any]], Tuple[bool, str]]

# Callback signature: def callback(entity, result)
TransitionCallback = Callable[[Any, Dict[str, Any]], None]


# =============================================================================
# TRANSITION DEFINITION
# =============================================================================

class Transition:
    """Definition of a state transition."""

    def __init__(
        self,
        from_state: str,
        action: str,
        to_state: str,
        handler: TransitionHandler,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ):
        self.from_state = from_state
        self.action = action
        self.to_state = to_state
        self.handler = handler
        self.guard = guard
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} --{self.action}--> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Generic state machine for managing entity state transitions.

    The entity may be a dict or an object; its current state is read from
    `status_field` either way.
    """

    def __init__(self, entity_name: str, status_field: str = "status"):
        self.entity_name = entity_name
        self.status_field = status_field

        # Transitions indexed by (from_state, action)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set()
        self._post_callbacks: List[TransitionCallback] = []

        logger.debug(f"[STATE_MACHINE] Initialized for entity: {entity_name}")

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        from_state: str,
        action: str,
        to_state: str,
        handler: TransitionHandler,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ) -> "StateMachine":
        key = (from_state, action)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' --{action}-->"
            )

        self._transitions[key] = Transition(
            from_state=from_state,
            action=action,
            to_state=to_state,
            handler=handler,
            guard=guard,
            description=description
        )
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    def on_post_transition(self, callback: TransitionCallback) -> "StateMachine":
        """Register callback to run AFTER a successful transition."""
        self._post_callbacks.append(callback)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def current_state(self, entity: Any) -> str:
        if isinstance(entity, dict):
            state = entity.get(self.status_field)
        else:
            state = getattr(entity, self.status_field, None)

        if state is None:
            raise StateMachineError(f"Entity missing status field: {self.status_field}")
        return state

    def get_allowed_actions(self, from_state: str) -> List[str]:
        return [action for (src, action) in self._transitions if src == from_state]

    def _get(self, from_state: str, action: str) -> Transition:
        transition = self._transitions.get((from_state, action))
        if transition is None:
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                action=action,
                allowed=self.get_allowed_actions(from_state)
            )
        return transition

    def check_guard(self, entity: Any, transition: Transition, context: Dict[str, Any]) -> None:
        if transition.guard is None:
            return
        allowed, reason = transition.guard(entity, context)
        if not allowed:
            raise GuardConditionError(
                entity=self.entity_name,
                from_state=transition.from_state,
                action=transition.action,
                reason=reason
            )

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    def transition(
        self,
        entity: Any,
        action: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a state transition.

        Returns:
            Result dict with:
            - status: "success"
            - action, from_state, to_state
            - changes: field changes from the handler (status included)
            - transitioned_at: Timestamp

        Raises:
            InvalidTransitionError: action not reachable from current state
            GuardConditionError / named guard errors: guard rejected the transition
            TransitionHandlerError: handler raised an unexpected exception
        """
        context = context or {}
        from_state = self.current_state(entity)
        transition = self._get(from_state, action)

        self.check_guard(entity, transition, context)

        try:
            changes = transition.handler(entity, context) or {}
        except BillingEngineError:
            raise
        except Exception as e:
            logger.error(
                f"[STATE_MACHINE] Handler failed {self.entity_name}: "
                f"'{action}' from '{from_state}': {e}"
            )
            raise TransitionHandlerError(self.entity_name, from_state, action, e) from e

        changes[self.status_field] = transition.to_state

        result = {
            "status": "success",
            "action": action,
            "from_state": from_state,
            "to_state": transition.to_state,
            "changes": changes,
            "transitioned_at": datetime.now(timezone.utc)
        }

        logger.info(
            f"[STATE_MACHINE] {self.entity_name}: '{from_state}' --{action}--> "
            f"'{transition.to_state}'"
        )
        return result

    def run_post_callbacks(self, entity: Any, result: Dict[str, Any]) -> None:
        """
        Run post-transition callbacks. Call after the result has been persisted.
        Callback failures are logged, never raised.
        """
        for callback in self._post_callbacks:
            try:
                callback(entity, result)
            except Exception as e:
                logger.error(f"[STATE_MACHINE] Post-callback error: {e}")

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        return sorted(self._states)

    def get_transitions(self) -> List[Dict[str, Any]]:
        return [
            {
                "from": t.from_state,
                "action": t.action,
                "to": t.to_state,
                "description": t.description,
                "has_guard": t.guard is not None
            }
            for t in self._transitions.values()
        ]

    def get_graph(self) -> Dict[str, List[str]]:
        """State graph as adjacency list."""
        graph = {state: [] for state in self._states}
        for t in self._transitions.values():
            graph[t.from_state].append(t.to_state)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )
