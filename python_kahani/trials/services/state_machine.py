"""
Conversation states, the transition table, and the per-trial lock.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from django.conf import settings
from django.db import transaction

from trials.models import FreeTrial
from trials.services.errors import RetryExhausted
from trials.services.messages import get_questions

logger = logging.getLogger(__name__)

State = FreeTrial.ConversationState


VALID_TRANSITIONS = {
    State.AWAITING_INITIAL_CONTACT: [State.WELCOME_SENT],
    State.WELCOME_SENT: [State.AWAITING_READINESS],
    State.AWAITING_READINESS: [State.AWAITING_READINESS, State.QUESTIONING, State.STALLED],
    State.QUESTIONING: [State.QUESTIONING, State.REMINDER_SENT, State.COMPLETED],
    State.REMINDER_SENT: [State.QUESTIONING, State.REMINDER_SENT, State.COMPLETED],
    State.COMPLETED: [],
    State.STALLED: [],
}

QUESTIONING_STATES = (State.QUESTIONING, State.REMINDER_SENT)
TERMINAL_STATES = (State.COMPLETED, State.STALLED)


class Outcome(str, Enum):
    """What an orchestration step did, as seen by its caller."""
    SENT = 'sent'
    SEND_FAILED = 'send_failed'
    RETRY_SCHEDULED = 'retry_scheduled'
    STALLED = 'stalled'
    ADVANCED = 'advanced'
    COMPLETED = 'completed'
    RESUMED = 'resumed'
    WAITING = 'waiting'
    NO_OP = 'no_op'


class InvalidTransitionError(Exception):
    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state} -> {to_state}")


def can_transition(from_state: str, to_state: str) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(State(from_state), [])
    return State(to_state) in allowed


def transition(trial: FreeTrial, to_state: str) -> FreeTrial:
    """Move a trial to a new state. Raises InvalidTransitionError if not allowed."""
    from_state = trial.conversation_state
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    trial.conversation_state = to_state
    if from_state != to_state:
        logger.info(f"Trial {trial.id}: {from_state} -> {to_state}")
    return trial


@contextmanager
def locked_trial(trial_id):
    """
    Serialize work on one trial: a transaction holding a row lock.
    Never keep this open across network I/O.
    """
    with transaction.atomic():
        yield FreeTrial.objects.select_for_update().get(pk=trial_id)


def seconds_setting(name: str) -> timedelta:
    return timedelta(seconds=getattr(settings, name))


def readiness_backoff(retry_count: int) -> timedelta:
    """READINESS_RETRY_BASE_SECONDS * 2^retry_count, capped at READINESS_RETRY_MAX_SECONDS."""
    delay = settings.READINESS_RETRY_BASE_SECONDS * (2 ** retry_count)
    return timedelta(seconds=min(delay, settings.READINESS_RETRY_MAX_SECONDS))


def check_readiness_bound(trial: FreeTrial) -> None:
    if trial.retry_count >= settings.MAX_READINESS_RETRIES:
        raise RetryExhausted(trial.id, trial.retry_count, settings.MAX_READINESS_RETRIES)


def register_readiness_miss(trial: FreeTrial, response: str, now: datetime) -> Outcome:
    """
    Count one negative, ambiguous or absent readiness reply.
    The caller holds the trial lock and saves the trial.
    """
    trial.retry_count += 1
    trial.last_readiness_response = response
    try:
        check_readiness_bound(trial)
    except RetryExhausted as e:
        transition(trial, State.STALLED)
        trial.retry_readiness_at = None
        logger.error(f"{e}; trial stalled and needs manual follow-up")
        return Outcome.STALLED

    transition(trial, State.AWAITING_READINESS)
    trial.retry_readiness_at = now + readiness_backoff(trial.retry_count)
    logger.info(
        f"Trial {trial.id}: readiness {response}, retry {trial.retry_count}/"
        f"{settings.MAX_READINESS_RETRIES} at {trial.retry_readiness_at.isoformat()}"
    )
    return Outcome.RETRY_SCHEDULED


def advance_after_answer(trial: FreeTrial, question_index: int, now: datetime) -> Outcome:
    """
    Move to the next question once the answer to question_index is stored.

    Runs inside the same locked transaction that marks the voice note
    completed. Returns NO_OP when the trial has moved on in the meantime.
    """
    if trial.conversation_state not in QUESTIONING_STATES:
        logger.info(f"Trial {trial.id} is {trial.conversation_state}; answer stored without advancing")
        return Outcome.NO_OP
    if trial.current_question_index != question_index:
        logger.info(
            f"Trial {trial.id} is on question {trial.current_question_index}, "
            f"not {question_index}; answer stored without advancing"
        )
        return Outcome.NO_OP

    trial.current_question_index = question_index + 1
    trial.reminder_sent_at = None
    trial.retry_count = 0

    if trial.current_question_index >= len(get_questions()):
        transition(trial, State.COMPLETED)
        trial.next_question_scheduled_for = None
        logger.info(f"Trial {trial.id}: all {trial.current_question_index} questions answered")
        return Outcome.COMPLETED

    transition(trial, State.QUESTIONING)
    trial.last_question_sent_at = None
    trial.next_question_scheduled_for = now + seconds_setting('NEXT_QUESTION_DELAY_SECONDS')
    logger.info(f"Trial {trial.id}: advanced to question {trial.current_question_index}")
    return Outcome.ADVANCED


def question_pending_delivery(trial: FreeTrial) -> bool:
    """The question for the current index has not gone out yet this cycle."""
    return trial.conversation_state in QUESTIONING_STATES and trial.last_question_sent_at is None


def is_due(value: Optional[datetime], now: datetime) -> bool:
    return value is not None and value <= now
