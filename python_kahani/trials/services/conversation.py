"""
Conversation orchestration for a storyteller's trial.

Every operation that sends a message follows the same discipline:
lock the trial and read what to send, release the lock, send, then lock
again and apply the transition only if the trial is still where it was.
A failed send leaves state and the driving timestamp untouched, so the
scheduler picks the same action up again on a later tick.
"""
import logging
from datetime import datetime
from typing import Callable, Optional, Tuple

from django.conf import settings
from django.utils import timezone

from trials.models import FreeTrial
from trials.services import messages
from trials.services.gateway import SendStatus, send_with_retry
from trials.services.ingestion import IngestionResult, IngestionStatus, ingest_voice_note
from trials.services.normalization import classify_readiness_reply, normalize_phone_number
from trials.services.state_machine import (
    QUESTIONING_STATES,
    Outcome,
    State,
    is_due,
    locked_trial,
    readiness_backoff,
    register_readiness_miss,
    seconds_setting,
    transition,
)

logger = logging.getLogger(__name__)


def _claim_until(now: datetime) -> datetime:
    return now + seconds_setting('SEND_CLAIM_SECONDS')


def _guarded_send(
    trial_id,
    gateway,
    now: datetime,
    precondition: Callable[[FreeTrial], bool],
    compose: Callable[[FreeTrial], Tuple[str, str]],
    on_sent: Callable[[FreeTrial], None],
    claim_field: Optional[str] = None,
    action: str = 'message',
) -> Outcome:
    """
    Send one message for a trial without holding its lock during the send.

    claim_field names the timestamp that makes the trial due; it is pushed
    past the claim window before sending so a concurrent tick cannot pick
    the same trial, and restored if the send fails.
    """
    with locked_trial(trial_id) as trial:
        if not precondition(trial):
            return Outcome.NO_OP
        snapshot = (trial.conversation_state, trial.current_question_index)
        recipient, body = compose(trial)
        claimed_from = None
        if claim_field:
            claimed_from = getattr(trial, claim_field)
            setattr(trial, claim_field, _claim_until(now))
            trial.save(update_fields=[claim_field, 'updated_at'])

    result = send_with_retry(gateway, recipient, body)

    with locked_trial(trial_id) as trial:
        if (trial.conversation_state, trial.current_question_index) != snapshot:
            logger.info(f"Trial {trial_id} moved on while sending {action}; not applying")
            return Outcome.NO_OP
        if not result.ok:
            if claim_field:
                setattr(trial, claim_field, claimed_from)
                trial.save(update_fields=[claim_field, 'updated_at'])
            level = logging.WARNING if result.status == SendStatus.TRANSIENT_ERROR else logging.ERROR
            logger.log(level, f"Trial {trial_id}: {action} not sent ({result.status.value}): {result.error}")
            return Outcome.SEND_FAILED
        on_sent(trial)
        trial.save()

    logger.info(f"Trial {trial_id}: {action} sent")
    return Outcome.SENT


def onboard_buyer(trial: FreeTrial, gateway) -> bool:
    """
    Send the buyer the trial confirmation and the link to forward to the
    storyteller. Best effort; trial state is not touched.
    """
    confirmation = send_with_retry(gateway, trial.customer_phone, messages.free_trial_confirmation(trial))
    if not confirmation.ok:
        logger.error(f"Trial {trial.id}: buyer confirmation not sent: {confirmation.error}")
        return False
    link = send_with_retry(gateway, trial.customer_phone, messages.shareable_link(trial))
    if not link.ok:
        logger.error(f"Trial {trial.id}: shareable link not sent: {link.error}")
        return False
    return True


def handle_inbound_text(trial_id, sender_phone: str, body: str, gateway, now: Optional[datetime] = None) -> Outcome:
    """Route a storyteller's text message according to the trial's state."""
    now = now or timezone.now()
    with locked_trial(trial_id) as trial:
        state = trial.conversation_state
        if state == State.AWAITING_INITIAL_CONTACT and not trial.storyteller_phone:
            trial.storyteller_phone = normalize_phone_number(sender_phone)
            trial.save(update_fields=['storyteller_phone', 'updated_at'])
            logger.info(f"Trial {trial_id}: storyteller phone captured")

    if state == State.AWAITING_INITIAL_CONTACT:
        return start_conversation(trial_id, gateway, now=now)
    if state == State.WELCOME_SENT:
        return send_readiness_check(trial_id, gateway, now=now)
    if state == State.AWAITING_READINESS:
        return handle_readiness_reply(trial_id, body, gateway, now=now)
    if state == State.REMINDER_SENT:
        return resume_questioning(trial_id)

    logger.debug(f"Trial {trial_id} ({state}): text message needs no action")
    return Outcome.NO_OP


def start_conversation(trial_id, gateway, now: Optional[datetime] = None) -> Outcome:
    """
    Welcome the storyteller, then ask whether they are ready.

    retry_readiness_at is claimed while the welcome is in flight; a failed
    welcome leaves it clear so the scheduler sends it again.
    """
    now = now or timezone.now()

    def precondition(trial):
        return (
            trial.conversation_state == State.AWAITING_INITIAL_CONTACT
            and bool(trial.storyteller_phone)
            and (trial.retry_readiness_at is None or is_due(trial.retry_readiness_at, now))
        )

    def on_sent(trial):
        transition(trial, State.WELCOME_SENT)
        trial.welcome_sent_at = now
        trial.retry_readiness_at = None

    outcome = _guarded_send(
        trial_id,
        gateway,
        now,
        precondition=precondition,
        compose=lambda t: (t.storyteller_phone, messages.storyteller_onboarding(t)),
        on_sent=on_sent,
        claim_field='retry_readiness_at',
        action='welcome',
    )
    if outcome != Outcome.SENT:
        return outcome
    return send_readiness_check(trial_id, gateway, now=now, claim=True)


def send_readiness_check(trial_id, gateway, now: Optional[datetime] = None, claim: bool = False) -> Outcome:
    """
    Ask the storyteller if they are ready. With claim=True (scheduler) the
    trial must be due on retry_readiness_at, which is claimed while sending.
    """
    now = now or timezone.now()

    def precondition(trial):
        if trial.conversation_state not in (State.WELCOME_SENT, State.AWAITING_READINESS):
            return False
        if claim and trial.retry_readiness_at is not None and trial.retry_readiness_at > now:
            return False
        return True

    def on_sent(trial):
        transition(trial, State.AWAITING_READINESS)
        trial.readiness_asked_at = now
        trial.last_readiness_response = None
        trial.retry_readiness_at = now + readiness_backoff(trial.retry_count)

    return _guarded_send(
        trial_id,
        gateway,
        now,
        precondition=precondition,
        compose=lambda t: (t.storyteller_phone, messages.readiness_check(t)),
        on_sent=on_sent,
        claim_field='retry_readiness_at' if claim else None,
        action='readiness check',
    )


def handle_readiness_reply(trial_id, body: str, gateway, now: Optional[datetime] = None) -> Outcome:
    """Affirmative replies start questioning; anything else counts as a miss."""
    now = now or timezone.now()
    response = classify_readiness_reply(body)
    if response == FreeTrial.ReadinessResponse.AFFIRMATIVE:
        return begin_questioning(trial_id, gateway, now=now)

    with locked_trial(trial_id) as trial:
        if trial.conversation_state != State.AWAITING_READINESS:
            return Outcome.NO_OP
        outcome = register_readiness_miss(trial, response, now)
        trial.save()
    return outcome


def handle_readiness_timeout(trial_id, gateway, now: Optional[datetime] = None) -> Outcome:
    """
    The readiness timer elapsed. Count a no_reply miss unless a reply was
    already counted since the last ask, then ask again. A storyteller who
    already said yes gets the first question instead.
    """
    now = now or timezone.now()
    with locked_trial(trial_id) as trial:
        if trial.conversation_state != State.AWAITING_READINESS or not is_due(trial.retry_readiness_at, now):
            return Outcome.NO_OP
        affirmed = trial.last_readiness_response == FreeTrial.ReadinessResponse.AFFIRMATIVE
        if trial.last_readiness_response is None:
            due_at = trial.retry_readiness_at
            outcome = register_readiness_miss(trial, FreeTrial.ReadinessResponse.NO_REPLY, now)
            if outcome == Outcome.RETRY_SCHEDULED:
                # still due: the resend below is what moves the timer
                trial.retry_readiness_at = due_at
            trial.save()
            if outcome == Outcome.STALLED:
                return outcome

    if affirmed:
        return begin_questioning(trial_id, gateway, now=now)
    return send_readiness_check(trial_id, gateway, now=now, claim=True)


def begin_questioning(trial_id, gateway, now: Optional[datetime] = None) -> Outcome:
    """
    Send the question at the current index and enter questioning.

    The affirmative reply is recorded before sending and retry_readiness_at
    made due, so if the send fails the next tick retries this question
    rather than the readiness check.
    """
    now = now or timezone.now()
    with locked_trial(trial_id) as trial:
        if trial.conversation_state != State.AWAITING_READINESS:
            return Outcome.NO_OP
        if trial.last_readiness_response != FreeTrial.ReadinessResponse.AFFIRMATIVE:
            trial.last_readiness_response = FreeTrial.ReadinessResponse.AFFIRMATIVE
            trial.retry_readiness_at = now
            trial.save(update_fields=['last_readiness_response', 'retry_readiness_at', 'updated_at'])

    def on_sent(trial):
        transition(trial, State.QUESTIONING)
        trial.last_readiness_response = FreeTrial.ReadinessResponse.AFFIRMATIVE
        trial.retry_readiness_at = None
        trial.retry_count = 0
        trial.reminder_sent_at = None
        trial.last_question_sent_at = now
        trial.next_question_scheduled_for = now + seconds_setting('QUESTION_REPLY_WINDOW_SECONDS')

    return _guarded_send(
        trial_id,
        gateway,
        now,
        precondition=lambda t: t.conversation_state == State.AWAITING_READINESS and is_due(t.retry_readiness_at, now),
        compose=lambda t: (t.storyteller_phone, messages.question(t, t.current_question_index)),
        on_sent=on_sent,
        claim_field='retry_readiness_at',
        action='first question',
    )


def deliver_question(trial_id, gateway, now: Optional[datetime] = None, claim: bool = True) -> Outcome:
    """Send the current question if it has not gone out yet this cycle."""
    now = now or timezone.now()

    def precondition(trial):
        if trial.conversation_state not in QUESTIONING_STATES or trial.last_question_sent_at is not None:
            return False
        return not claim or is_due(trial.next_question_scheduled_for, now)

    def on_sent(trial):
        transition(trial, State.QUESTIONING)
        trial.last_question_sent_at = now
        trial.next_question_scheduled_for = now + seconds_setting('QUESTION_REPLY_WINDOW_SECONDS')

    return _guarded_send(
        trial_id,
        gateway,
        now,
        precondition=precondition,
        compose=lambda t: (t.storyteller_phone, messages.question(t, t.current_question_index)),
        on_sent=on_sent,
        claim_field='next_question_scheduled_for' if claim else None,
        action='question',
    )


def send_reminder(trial_id, gateway, now: Optional[datetime] = None) -> Outcome:
    """Remind the storyteller of the same question; the index does not move."""
    now = now or timezone.now()

    def precondition(trial):
        return (
            trial.conversation_state in QUESTIONING_STATES
            and trial.last_question_sent_at is not None
            and trial.retry_count < settings.MAX_QUESTION_REMINDERS
            and is_due(trial.next_question_scheduled_for, now)
        )

    def on_sent(trial):
        transition(trial, State.REMINDER_SENT)
        trial.reminder_sent_at = now
        trial.retry_count += 1
        trial.next_question_scheduled_for = now + seconds_setting('REMINDER_INTERVAL_SECONDS')

    return _guarded_send(
        trial_id,
        gateway,
        now,
        precondition=precondition,
        compose=lambda t: (t.storyteller_phone, messages.reminder(t, t.current_question_index)),
        on_sent=on_sent,
        claim_field='next_question_scheduled_for',
        action='reminder',
    )


def resume_questioning(trial_id) -> Outcome:
    """reminder_sent -> questioning."""
    with locked_trial(trial_id) as trial:
        if trial.conversation_state != State.REMINDER_SENT:
            return Outcome.NO_OP
        transition(trial, State.QUESTIONING)
        trial.save(update_fields=['conversation_state', 'updated_at'])
    return Outcome.RESUMED


def handle_voice_note(
    trial_id,
    question_index: int,
    media_ref,
    gateway,
    storage=None,
    retry_policy=None,
    now: Optional[datetime] = None,
) -> IngestionResult:
    """
    Ingest a voice note and, when it advanced the conversation, acknowledge
    it and deliver the next question if that is already due.
    """
    now = now or timezone.now()
    result = ingest_voice_note(
        trial_id,
        question_index,
        media_ref,
        gateway,
        storage=storage,
        retry_policy=retry_policy,
        now=now,
    )
    if result.status != IngestionStatus.COMPLETED or result.outcome not in (Outcome.ADVANCED, Outcome.COMPLETED):
        return result

    trial = FreeTrial.objects.get(pk=trial_id)
    ack = send_with_retry(gateway, trial.storyteller_phone, messages.voice_note_acknowledgment(trial))
    if not ack.ok:
        logger.warning(f"Trial {trial_id}: acknowledgment not sent: {ack.error}")

    if result.outcome == Outcome.ADVANCED:
        deliver_question(trial_id, gateway, now=now)
    return result


def send_album_completion(trial_id, playlist_album_link: str, vinyl_album_link: str, gateway) -> Outcome:
    """Send the finished album links to a completed trial's storyteller."""
    trial = FreeTrial.objects.get(pk=trial_id)
    if trial.conversation_state != State.COMPLETED:
        logger.warning(f"Trial {trial_id} is {trial.conversation_state}; album links not sent")
        return Outcome.NO_OP
    result = send_with_retry(
        gateway,
        trial.storyteller_phone,
        messages.album_completion(trial, playlist_album_link, vinyl_album_link),
    )
    if not result.ok:
        logger.error(f"Trial {trial_id}: album completion not sent: {result.error}")
        return Outcome.SEND_FAILED
    logger.info(f"Trial {trial_id}: album completion sent")
    return Outcome.SENT
