"""
GENERIC STATE MACHINE

Registers legal transitions with async handlers and executes them inside
the caller's transaction:

    machine = StateMachine("order", collection=db.orders, key_field="order_id")
    machine.register("PENDING", "PAID", handle_paid, guard=payment_unpaid)
    result = await machine.transition(order_doc, "PAID", session=session, context={...})

A handler performs the side effects of its transition and may return
{"updates": {...}} with extra fields to write together with the new status.
The machine persists status, status_changed_at and a state_history entry
in one update. Any handler exception is wrapped in TransitionHandlerError
and propagates, aborting the transaction.
"""

from typing import Dict, Any, Optional, Callable, Awaitable, List, Set, Tuple, Iterable
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateMachineError(Exception):
    """Base exception for state machine errors."""
    pass


class InvalidTransitionError(StateMachineError):
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed from '{from_state}': {self.allowed}" if self.allowed else ""
        super().__init__(f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}")


class TransitionHandlerError(StateMachineError):
    def __init__(self, entity: str, from_state: str, to_state: str, original_error: Exception):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.original_error = original_error
        super().__init__(
            f"Handler failed for {entity}: '{from_state}' -> '{to_state}': {original_error}"
        )


class GuardConditionError(StateMachineError):
    def __init__(self, entity: str, from_state: str, to_state: str, reason: str):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(f"Guard blocked {entity}: '{from_state}' -> '{to_state}': {reason}")


# =============================================================================
# TYPES
# =============================================================================

# async def handler(entity_doc, context, session) -> Optional[Dict[str, Any]]
TransitionHandler = Callable[[Dict[str, Any], Dict[str, Any], Any], Awaitable[Optional[Dict[str, Any]]]]

# async def guard(entity_doc, context, session) -> Tuple[bool, str]
GuardCondition = Callable[[Dict[str, Any], Dict[str, Any], Any], Awaitable[Tuple[bool, str]]]

# async def callback(entity_doc, from_state, to_state, result)
TransitionCallback = Callable[[Dict[str, Any], str, str, Dict[str, Any]], Awaitable[None]]


class Transition:
    def __init__(
        self,
        from_state: str,
        to_state: str,
        handler: TransitionHandler,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.handler = handler
        self.guard = guard
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    def __init__(
        self,
        entity_name: str,
        collection=None,
        key_field: str = "_id",
        status_field: str = "status",
        history_field: Optional[str] = "state_history",
        terminal_states: Iterable[str] = ()
    ):
        """
        Args:
            entity_name: Name used in logs and errors
            collection: Motor collection the status is persisted to (None = handlers persist)
            key_field: Field identifying the document in that collection
            status_field: Field holding the current state
            history_field: Array field receiving transition entries (None to disable)
            terminal_states: States with no outgoing transitions
        """
        self.entity_name = entity_name
        self.collection = collection
        self.key_field = key_field
        self.status_field = status_field
        self.history_field = history_field
        self.terminal_states: Set[str] = set(terminal_states)

        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set(self.terminal_states)
        self._post_callbacks: List[TransitionCallback] = []

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        from_state: str,
        to_state: str,
        handler: TransitionHandler,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ) -> "StateMachine":
        if from_state in self.terminal_states:
            raise StateMachineError(
                f"Cannot register transition out of terminal state '{from_state}' for {self.entity_name}"
            )

        key = (from_state, to_state)
        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = Transition(from_state, to_state, handler, guard, description)
        self._states.update((from_state, to_state))
        return self

    def on_post_transition(self, callback: TransitionCallback) -> "StateMachine":
        """Register a callback run after a successful transition. Its errors are logged only."""
        self._post_callbacks.append(callback)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        return [dst for (src, dst) in self._transitions if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in self._transitions

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states

    def validate_transition(self, from_state: str, to_state: str) -> None:
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    async def check_guard(self, entity_doc: Dict[str, Any], from_state: str, to_state: str,
                          context: Dict[str, Any], session=None) -> None:
        transition = self._transitions.get((from_state, to_state))
        if transition and transition.guard:
            allowed, reason = await transition.guard(entity_doc, context, session)
            if not allowed:
                raise GuardConditionError(self.entity_name, from_state, to_state, reason)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def transition(
        self,
        entity_doc: Dict[str, Any],
        to_state: str,
        session: Any = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a transition and persist the new status.

        Returns:
            status, from_state, to_state, handler_result, transitioned_at

        Raises:
            InvalidTransitionError, GuardConditionError, TransitionHandlerError
        """
        context = context or {}
        from_state = entity_doc.get(self.status_field)
        if from_state is None:
            raise StateMachineError(f"Entity missing status field: {self.status_field}")

        self.validate_transition(from_state, to_state)
        await self.check_guard(entity_doc, from_state, to_state, context, session)

        transition = self._transitions[(from_state, to_state)]
        key = entity_doc.get(self.key_field)
        logger.info(f"[STATE_MACHINE] {self.entity_name} {key}: '{from_state}' -> '{to_state}'")

        try:
            handler_result = await transition.handler(entity_doc, context, session) or {}
        except Exception as e:
            logger.error(
                f"[STATE_MACHINE] Handler failed {self.entity_name} {key}: "
                f"'{from_state}' -> '{to_state}': {e}"
            )
            raise TransitionHandlerError(self.entity_name, from_state, to_state, e) from e

        transitioned_at = datetime.utcnow()
        if self.collection is not None:
            await self._persist(entity_doc, from_state, to_state, handler_result,
                                context, transitioned_at, session)

        entity_doc[self.status_field] = to_state
        entity_doc.update(handler_result.get("updates", {}))

        result = {
            "status": "success",
            "from_state": from_state,
            "to_state": to_state,
            "handler_result": handler_result,
            "transitioned_at": transitioned_at
        }

        for callback in self._post_callbacks:
            try:
                await callback(entity_doc, from_state, to_state, result)
            except Exception as e:
                logger.error(f"[STATE_MACHINE] Post-callback error: {e}")

        return result

    async def _persist(self, entity_doc, from_state, to_state, handler_result,
                       context, transitioned_at, session) -> None:
        update: Dict[str, Any] = {
            "$set": {
                **handler_result.get("updates", {}),
                **self.get_status_update(to_state, transitioned_at)
            }
        }
        if self.history_field:
            update["$push"] = {
                self.history_field: self.get_history_entry(
                    from_state, to_state,
                    actor=context.get("actor"),
                    metadata=context.get("history_metadata"),
                    at=transitioned_at
                )
            }

        result = await self.collection.update_one(
            {self.key_field: entity_doc[self.key_field], self.status_field: from_state},
            update,
            session=session
        )
        if result.matched_count != 1:
            # Someone else moved the entity inside our snapshot; abort.
            raise StateMachineError(
                f"{self.entity_name} {entity_doc[self.key_field]} is no longer '{from_state}'"
            )

    def get_status_update(self, to_state: str, at: Optional[datetime] = None) -> Dict[str, Any]:
        at = at or datetime.utcnow()
        return {
            self.status_field: to_state,
            f"{self.status_field}_changed_at": at,
            "updated_at": at
        }

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": at or datetime.utcnow(),
            "transitioned_by": actor,
            "metadata": metadata or {}
        }

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        return sorted(self._states)

    def get_transitions(self) -> List[Dict[str, Any]]:
        return [
            {
                "from": t.from_state,
                "to": t.to_state,
                "description": t.description,
                "has_guard": t.guard is not None
            }
            for t in self._transitions.values()
        ]

    def get_graph(self) -> Dict[str, List[str]]:
        graph = {state: [] for state in self._states}
        for (src, dst) in self._transitions:
            graph[src].append(dst)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )
