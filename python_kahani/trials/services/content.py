"""
Content addressing and answer-slot dedup for voice notes.

The dedup key is the (trial, question_index) slot, not the hash: two takes
of the same answer still collapse into one slot. The sha256 is kept as an
integrity check and as the storage file name.
"""
import hashlib
import logging
import mimetypes
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.utils import timezone

from trials.models import FreeTrial, VoiceNote
from trials.services.errors import DuplicateAnswer
from trials.services.messages import question_text

logger = logging.getLogger(__name__)

EXTENSION_OVERRIDES = {
    'audio/ogg': '.ogg',
    'audio/opus': '.opus',
    'audio/mpeg': '.mp3',
    'audio/mp4': '.m4a',
    'audio/amr': '.amr',
}


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_slot_filled(trial_id, question_index: int) -> bool:
    """True once a completed voice note exists for this question."""
    return VoiceNote.objects.filter(
        free_trial_id=trial_id,
        question_index=question_index,
        download_status=VoiceNote.DownloadStatus.COMPLETED,
    ).exists()


def claim_slot(trial: FreeTrial, question_index: int, media_ref) -> VoiceNote:
    """
    Create or reuse the voice note row for a slot and mark it downloading.

    Must be called while holding the trial lock.

    Raises:
        DuplicateAnswer: slot already completed, the same media already stored
            for another question, or another delivery is downloading it right now
    """
    if VoiceNote.objects.filter(
        free_trial=trial,
        media_id=media_ref.media_id,
        download_status=VoiceNote.DownloadStatus.COMPLETED,
    ).exclude(question_index=question_index).exists():
        raise DuplicateAnswer(trial.id, question_index, 'media already stored for another question')

    note, created = VoiceNote.objects.get_or_create(
        free_trial=trial,
        question_index=question_index,
        defaults={
            'question_text': question_text(question_index),
            'media_id': media_ref.media_id,
            'media_url': media_ref.url,
            'mime_type': media_ref.content_type,
        },
    )

    if not created:
        if note.download_status == VoiceNote.DownloadStatus.COMPLETED:
            raise DuplicateAnswer(trial.id, question_index)
        stale_after = timedelta(seconds=settings.DOWNLOAD_STALE_SECONDS)
        if (
            note.download_status == VoiceNote.DownloadStatus.DOWNLOADING
            and note.updated_at
            and note.updated_at > timezone.now() - stale_after
        ):
            raise DuplicateAnswer(trial.id, question_index, 'download already in progress')
        note.media_id = media_ref.media_id
        note.media_url = media_ref.url
        note.mime_type = media_ref.content_type
        note.failure_reason = None

    note.download_status = VoiceNote.DownloadStatus.DOWNLOADING
    note.attempts += 1
    note.save()
    logger.info(
        f"Trial {trial.id}: {'created' if created else 'reusing'} voice note row "
        f"{note.id} for question {question_index}"
    )
    return note


def extension_for(mime_type: Optional[str]) -> str:
    if not mime_type:
        return '.bin'
    base_type = mime_type.split(';')[0].strip().lower()
    return EXTENSION_OVERRIDES.get(base_type) or mimetypes.guess_extension(base_type) or '.bin'


def storage_path(trial_id, question_index: int, sha256: str, mime_type: Optional[str]) -> str:
    return f"voice_notes/{trial_id}/q{question_index:02d}_{sha256[:16]}{extension_for(mime_type)}"


def store_media(note: VoiceNote, data: bytes, mime_type: Optional[str], sha256: str, storage=None) -> str:
    """
    Persist the bytes under a content-addressed path and return the stored name.
    Identical content already at that path is reused, not written twice.
    """
    storage = storage or default_storage
    path = storage_path(note.free_trial_id, note.question_index, sha256, mime_type)
    if storage.exists(path):
        with storage.open(path, 'rb') as existing:
            if compute_sha256(existing.read()) == sha256:
                logger.debug(f"Media already stored at {path}")
                return path
    stored_name = storage.save(path, ContentFile(data))
    logger.info(f"Stored {len(data)} bytes at {stored_name}")
    return stored_name
