"""Recovery hierarchy and the goodbye guard.

Levels, lowest first:
  1. Direct match     phone lookup found the caller
  2. Identity pivot   caller denied the match, asking for their name
  3. Search fallback  name search failed, booking without identity
  4. Safety valve     stuck, hand off by SMS and end the call

Level 4 is checked before any state handler runs and again after a handler
reports an unproductive turn.
"""

import logging

from clinicline.session import CallSession
from clinicline.states import Objective, RecoveryLevel, State

logger = logging.getLogger(__name__)

STUCK_TURN_LIMIT = 2


def escalate(session: CallSession, level: RecoveryLevel):
    if level > session.recovery_level:
        logger.info("[%s] recovery level %d -> %d", session.state.value, session.recovery_level, level)
        session.recovery_level = level


def reset_recovery(session: CallSession):
    if session.recovery_level != RecoveryLevel.DIRECT_MATCH:
        logger.info("[%s] recovered, back to direct match", session.state.value)
    session.recovery_level = RecoveryLevel.DIRECT_MATCH


def count_unproductive_turn(session: CallSession):
    session.turns_in_state += 1


def needs_safety_valve(session: CallSession) -> bool:
    return (
        session.turns_in_state >= STUCK_TURN_LIMIT
        and session.locked_objective is not None
        and not session.state.is_terminal
        and session.state != State.SAFETY_VALVE
    )


def goodbye_allowed(session: CallSession) -> bool:
    """May the call end right now without abandoning the caller?"""
    if session.locked_objective is None:
        return True
    if session.state in (State.COMPLETED, State.SAFETY_VALVE):
        return True
    if session.locked_objective == Objective.BOOK:
        return session.appointment_created
    return session.objective_complete
