from __future__ import annotations

from collections.abc import Iterable, Mapping

from django.core.exceptions import ImproperlyConfigured

from common.errors import InvalidTransitionError, ValidationError


class StatusWorkflow:
    """Finite state machine over a ``TextChoices`` status field.

    ``transitions`` maps every state to the states reachable from it in one
    step. Staying in the same state is always allowed and is treated as a
    no-op by :meth:`validate`.
    """

    def __init__(self, entity: str, states: Iterable[str], transitions: Mapping[str, Iterable[str]]):
        self.entity = entity
        self.states = tuple(str(state) for state in states)
        self.transitions = {
            str(source): tuple(str(target) for target in targets) for source, targets in transitions.items()
        }

        missing = [state for state in self.states if state not in self.transitions]
        if missing:
            raise ImproperlyConfigured(f"{entity} workflow has no transitions for: {', '.join(missing)}.")

        referenced = set(self.transitions) | {target for targets in self.transitions.values() for target in targets}
        unknown = sorted(state for state in referenced if state not in self.states)
        if unknown:
            raise ImproperlyConfigured(f"{entity} workflow references unknown states: {', '.join(unknown)}.")

    def is_status(self, value) -> bool:
        return value in self.states

    def allowed_next(self, status) -> list[str]:
        return list(self.transitions.get(status, ()))

    def is_terminal(self, status) -> bool:
        return self.is_status(status) and not self.transitions[status]

    def can_transition(self, from_status, to_status) -> bool:
        if from_status == to_status:
            return True
        return to_status in self.transitions.get(from_status, ())

    def validate(self, from_status, to_status) -> bool:
        """Return ``True`` when the move changes state, ``False`` for a no-op.

        Raises ``ValidationError`` for an unknown target and
        ``InvalidTransitionError`` when the move is not permitted.
        """
        if from_status == to_status:
            return False
        if not self.is_status(to_status):
            raise ValidationError(
                f"Invalid {self.entity} status: {to_status}",
                errors={"status": [f"Must be one of: {', '.join(self.states)}."]},
            )
        if not self.can_transition(from_status, to_status):
            raise InvalidTransitionError(
                self.entity,
                from_status,
                to_status,
                allowed=self.allowed_next(from_status),
            )
        return True
