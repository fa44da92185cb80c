"""
Voice note ingestion pipeline.

Turns one inbound voice-note event {trial_id, question_index, media_ref}
into at most one completed VoiceNote:

1. Lock the trial; a completed slot is a duplicate (success, no-op)
2. Create or reuse the slot row and mark it downloading; release the lock
3. Fetch media metadata (bounded retries on transient failures)
4. Download the bytes (bounded retries), hash them
5. Store the bytes under a content-addressed path
6. Lock again; mark the row completed and advance the conversation in the
   same transaction

Any failure before step 6, classified or not, leaves the row failed and
the question index untouched, so replaying the same event later is safe.
A failed result says whether the cause was transient.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from django.db import transaction
from django.utils import timezone

from trials.models import VoiceNote
from trials.services.content import claim_slot, compute_sha256, is_slot_filled, store_media
from trials.services.errors import DuplicateAnswer, PermanentProviderError, ProviderError, TransientProviderError
from trials.services.messages import get_questions
from trials.services.retry import RetryPolicy
from trials.services.state_machine import (
    QUESTIONING_STATES,
    Outcome,
    advance_after_answer,
    locked_trial,
)

logger = logging.getLogger(__name__)


class IngestionStatus(str, Enum):
    COMPLETED = 'completed'
    DUPLICATE = 'duplicate'
    FAILED = 'failed'
    REJECTED = 'rejected'


@dataclass(frozen=True)
class IngestionResult:
    status: IngestionStatus
    voice_note_id: Optional[str] = None
    outcome: Optional[Outcome] = None
    error: Optional[str] = None
    transient: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in (IngestionStatus.COMPLETED, IngestionStatus.DUPLICATE)


def _mark_failed(note_id, reason: str) -> None:
    with transaction.atomic():
        note = VoiceNote.objects.select_for_update().get(pk=note_id)
        if note.download_status == VoiceNote.DownloadStatus.COMPLETED:
            return
        note.download_status = VoiceNote.DownloadStatus.FAILED
        note.failure_reason = reason[:255]
        note.save()


def ingest_voice_note(
    trial_id,
    question_index: int,
    media_ref,
    gateway,
    storage=None,
    retry_policy: Optional[RetryPolicy] = None,
    now: Optional[datetime] = None,
) -> IngestionResult:
    """
    Ingest one inbound voice note for a trial's question.

    Args:
        trial_id: FreeTrial primary key
        question_index: Question the note answers, bound when the message was accepted
        media_ref: gateway.MediaRef for the provider media
        gateway: Messaging gateway used for metadata and download
        storage: Django storage for the bytes (default_storage when None)
        retry_policy: Bounded retry policy for transient provider failures

    Returns:
        IngestionResult; provider failures are reported, not raised. Anything
        else marks the note failed and propagates.
    """
    retry_policy = retry_policy or RetryPolicy.from_settings()
    now = now or timezone.now()

    with locked_trial(trial_id) as trial:
        try:
            if is_slot_filled(trial.id, question_index):
                raise DuplicateAnswer(trial.id, question_index)
            if question_index >= len(get_questions()):
                logger.warning(f"Trial {trial_id}: voice note for unknown question {question_index}")
                return IngestionResult(IngestionStatus.REJECTED, error='unknown question')
            if (
                trial.conversation_state not in QUESTIONING_STATES
                or trial.current_question_index != question_index
            ):
                logger.warning(
                    f"Trial {trial_id} ({trial.conversation_state}, question "
                    f"{trial.current_question_index}) is not waiting for question {question_index}"
                )
                return IngestionResult(IngestionStatus.REJECTED, error='question not open')
            note = claim_slot(trial, question_index, media_ref)
        except DuplicateAnswer as e:
            logger.info(f"Duplicate voice note ignored: {e}")
            return IngestionResult(IngestionStatus.DUPLICATE)

    note_id = note.id
    try:
        return _fetch_and_complete(trial_id, question_index, media_ref, note, gateway, storage, retry_policy, now)
    except Exception as e:
        logger.error(
            f"Trial {trial_id}: ingestion of question {question_index} raised; marking note {note_id} failed",
            exc_info=True
        )
        _mark_failed(note_id, f"unexpected error: {e!r}")
        raise


def _fetch_and_complete(trial_id, question_index, media_ref, note, gateway, storage, retry_policy, now):
    note_id = note.id
    try:
        metadata = retry_policy.call(gateway.fetch_media_metadata, media_ref)
        data = retry_policy.call(gateway.download_media, media_ref)
        if not data:
            raise PermanentProviderError(f"Media {media_ref.media_id} downloaded empty")
    except ProviderError as e:
        logger.error(f"Trial {trial_id}: ingestion of question {question_index} failed: {e}")
        _mark_failed(note_id, str(e))
        return IngestionResult(
            IngestionStatus.FAILED,
            voice_note_id=str(note_id),
            error=str(e),
            transient=isinstance(e, TransientProviderError),
        )

    sha256 = compute_sha256(data)
    size_bytes = len(data)
    mime_type = metadata.mime_type
    if metadata.size_bytes is not None and metadata.size_bytes != size_bytes:
        logger.warning(
            f"Trial {trial_id}: media {media_ref.media_id} reported {metadata.size_bytes} bytes, "
            f"downloaded {size_bytes}"
        )

    try:
        stored_path = store_media(note, data, mime_type, sha256, storage=storage)
    except OSError as e:
        logger.error(f"Trial {trial_id}: could not store media {media_ref.media_id}: {e}", exc_info=True)
        _mark_failed(note_id, f"storage error: {e}")
        return IngestionResult(IngestionStatus.FAILED, voice_note_id=str(note_id), error=str(e), transient=True)

    with locked_trial(trial_id) as trial:
        note = VoiceNote.objects.select_for_update().get(pk=note_id)
        if note.download_status == VoiceNote.DownloadStatus.COMPLETED:
            logger.info(f"Voice note {note_id} was completed by a concurrent delivery")
            return IngestionResult(IngestionStatus.DUPLICATE, voice_note_id=str(note_id))

        note.download_status = VoiceNote.DownloadStatus.COMPLETED
        note.media_url = media_ref.url
        note.local_file_path = stored_path
        note.mime_type = mime_type
        note.size_bytes = size_bytes
        note.media_sha256 = sha256
        note.failure_reason = None
        note.save()

        outcome = advance_after_answer(trial, question_index, now)
        trial.save()

    logger.info(
        f"Trial {trial_id}: voice note {note_id} for question {question_index} completed "
        f"({size_bytes} bytes, sha256={sha256[:12]}), outcome={outcome.value}"
    )
    return IngestionResult(IngestionStatus.COMPLETED, voice_note_id=str(note_id), outcome=outcome)
