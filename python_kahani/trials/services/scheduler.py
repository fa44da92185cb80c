"""
Timer-driven scheduler tick.

Due work is recomputed from the stored timestamps on every tick, so a
restart loses nothing. Each trial is handled on its own; a failure on one
is logged and counted, and the tick moves on.
"""
import logging
from datetime import datetime
from typing import Optional

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from trials.models import FreeTrial
from trials.services import conversation
from trials.services.content import is_slot_filled
from trials.services.gateway import get_gateway
from trials.services.state_machine import QUESTIONING_STATES, Outcome, State, is_due, locked_trial

logger = logging.getLogger(__name__)


def _empty_summary() -> dict:
    return {
        'welcomes_sent': 0,
        'readiness_sent': 0,
        'questions_sent': 0,
        'reminders_sent': 0,
        'stalled': 0,
        'resumed': 0,
        'waiting': 0,
        'failed': 0,
    }


def _stop_reminders(trial_id, now: datetime) -> Outcome:
    """Reminders exhausted: keep waiting for a voice note, schedule nothing more."""
    with locked_trial(trial_id) as trial:
        if trial.conversation_state not in QUESTIONING_STATES or not is_due(trial.next_question_scheduled_for, now):
            return Outcome.NO_OP
        trial.next_question_scheduled_for = None
        trial.save(update_fields=['next_question_scheduled_for', 'updated_at'])
    logger.info(
        f"Trial {trial_id}: {settings.MAX_QUESTION_REMINDERS} reminders sent for question "
        f"{trial.current_question_index}; waiting for a voice note"
    )
    return Outcome.WAITING


def _process_questioning(trial: FreeTrial, gateway, now: datetime) -> tuple:
    """Returns (outcome, summary key counted on a successful send)."""
    if trial.last_question_sent_at is None:
        return conversation.deliver_question(trial.id, gateway, now=now), 'questions_sent'
    if is_slot_filled(trial.id, trial.current_question_index):
        logger.debug(f"Trial {trial.id}: question {trial.current_question_index} already answered")
        return Outcome.NO_OP, None
    if trial.retry_count >= settings.MAX_QUESTION_REMINDERS:
        return _stop_reminders(trial.id, now), None
    return conversation.send_reminder(trial.id, gateway, now=now), 'reminders_sent'


def _process_readiness_timeout(trial: FreeTrial, gateway, now: datetime) -> tuple:
    """Returns (outcome, summary key counted on a successful send)."""
    outcome = conversation.handle_readiness_timeout(trial.id, gateway, now=now)
    if trial.last_readiness_response == FreeTrial.ReadinessResponse.AFFIRMATIVE:
        return outcome, 'questions_sent'
    return outcome, 'readiness_sent'


def _record(summary: dict, outcome: Outcome, sent_key: Optional[str]) -> None:
    if outcome == Outcome.SENT and sent_key:
        summary[sent_key] += 1
    elif outcome == Outcome.SEND_FAILED:
        summary['failed'] += 1
    elif outcome == Outcome.STALLED:
        summary['stalled'] += 1
    elif outcome == Outcome.RESUMED:
        summary['resumed'] += 1
    elif outcome == Outcome.WAITING:
        summary['waiting'] += 1


def run_tick(gateway=None, now: Optional[datetime] = None) -> dict:
    """
    Run one scheduler pass over every due trial.

    Steps:
    0. trials whose storyteller wrote in but whose welcome never went out,
       then welcome_sent trials whose readiness check never went out
    1. awaiting_readiness trials past retry_readiness_at (the first question
       instead when the storyteller already said yes)
    2. questioning / reminder_sent trials past next_question_scheduled_for
    3. reminder_sent trials not yet due again go back to questioning

    Returns:
        Summary dict of counts for the pass
    """
    gateway = gateway or get_gateway()
    now = now or timezone.now()
    summary = _empty_summary()

    unwelcomed = FreeTrial.objects.filter(
        conversation_state=State.AWAITING_INITIAL_CONTACT,
        storyteller_phone__isnull=False,
        welcome_sent_at__isnull=True,
    ).exclude(storyteller_phone='').filter(Q(retry_readiness_at__isnull=True) | Q(retry_readiness_at__lte=now))

    welcome_pending = FreeTrial.objects.filter(
        conversation_state=State.WELCOME_SENT,
        readiness_asked_at__isnull=True,
    ).filter(Q(retry_readiness_at__isnull=True) | Q(retry_readiness_at__lte=now))

    readiness_due = FreeTrial.objects.filter(
        conversation_state=State.AWAITING_READINESS,
        retry_readiness_at__lte=now,
    )

    questions_due = FreeTrial.objects.filter(
        conversation_state__in=QUESTIONING_STATES,
        next_question_scheduled_for__lte=now,
    )

    # evaluated up front so reminders sent by this pass stay reminder_sent until the next one
    reminded_ids = list(
        FreeTrial.objects.filter(conversation_state=State.REMINDER_SENT)
        .filter(Q(next_question_scheduled_for__isnull=True) | Q(next_question_scheduled_for__gt=now))
        .values_list('id', flat=True)
    )

    for trial_id in unwelcomed.values_list('id', flat=True):
        try:
            outcome = conversation.start_conversation(trial_id, gateway, now=now)
            _record(summary, outcome, 'welcomes_sent')
        except Exception:
            summary['failed'] += 1
            logger.error(f"Scheduler: welcome for trial {trial_id} raised", exc_info=True)

    for trial_id in welcome_pending.values_list('id', flat=True):
        try:
            outcome = conversation.send_readiness_check(trial_id, gateway, now=now, claim=True)
            _record(summary, outcome, 'readiness_sent')
        except Exception:
            summary['failed'] += 1
            logger.error(f"Scheduler: readiness check for trial {trial_id} raised", exc_info=True)

    for trial in list(readiness_due):
        try:
            outcome, sent_key = _process_readiness_timeout(trial, gateway, now)
            _record(summary, outcome, sent_key)
        except Exception:
            summary['failed'] += 1
            logger.error(f"Scheduler: readiness timeout for trial {trial.id} raised", exc_info=True)

    for trial in list(questions_due):
        try:
            outcome, sent_key = _process_questioning(trial, gateway, now)
            _record(summary, outcome, sent_key)
        except Exception:
            summary['failed'] += 1
            logger.error(f"Scheduler: question step for trial {trial.id} raised", exc_info=True)

    for trial_id in reminded_ids:
        try:
            _record(summary, conversation.resume_questioning(trial_id), None)
        except Exception:
            summary['failed'] += 1
            logger.error(f"Scheduler: resuming trial {trial_id} raised", exc_info=True)

    if any(summary.values()):
        logger.info(f"Scheduler tick at {now.isoformat()}: {summary}")
    else:
        logger.debug(f"Scheduler tick at {now.isoformat()}: nothing due")
    return summary
