"""
Data models for the Story Gateway service.
"""
import uuid

from django.db import models


class FreeTrial(models.Model):
    """
    One buyer/storyteller pairing and the state of its story conversation.

    Timer fields are "due at" / "happened at" stamps; the scheduler recomputes
    due work from them on every tick, so nothing is held in memory.
    """

    class ConversationState(models.TextChoices):
        AWAITING_INITIAL_CONTACT = 'awaiting_initial_contact', 'Awaiting initial contact'
        WELCOME_SENT = 'welcome_sent', 'Welcome sent'
        AWAITING_READINESS = 'awaiting_readiness', 'Awaiting readiness'
        QUESTIONING = 'questioning', 'Questioning'
        REMINDER_SENT = 'reminder_sent', 'Reminder sent'
        COMPLETED = 'completed', 'Completed'
        STALLED = 'stalled', 'Stalled'

    class ReadinessResponse(models.TextChoices):
        AFFIRMATIVE = 'affirmative', 'Affirmative'
        NEGATIVE = 'negative', 'Negative'
        AMBIGUOUS = 'ambiguous', 'Ambiguous'
        NO_REPLY = 'no_reply', 'No reply'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer_phone = models.CharField(max_length=20)
    buyer_name = models.CharField(max_length=255)
    storyteller_name = models.CharField(max_length=255)
    selected_album = models.CharField(max_length=255)
    storyteller_phone = models.CharField(max_length=20, null=True, blank=True, db_index=True)
    conversation_state = models.CharField(
        max_length=50,
        choices=ConversationState.choices,
        default=ConversationState.AWAITING_INITIAL_CONTACT,
    )
    current_question_index = models.PositiveIntegerField(default=0)
    retry_readiness_at = models.DateTimeField(null=True, blank=True)
    retry_count = models.PositiveIntegerField(default=0)
    last_readiness_response = models.CharField(
        max_length=50,
        choices=ReadinessResponse.choices,
        null=True,
        blank=True
    )
    welcome_sent_at = models.DateTimeField(null=True, blank=True)
    readiness_asked_at = models.DateTimeField(null=True, blank=True)
    last_question_sent_at = models.DateTimeField(null=True, blank=True)
    reminder_sent_at = models.DateTimeField(null=True, blank=True)
    next_question_scheduled_for = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'free_trials'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['conversation_state'], name='free_trials_state_idx'),
            models.Index(fields=['retry_readiness_at'], name='free_trials_retry_ready_idx'),
            models.Index(fields=['next_question_scheduled_for'], name='free_trials_next_question_idx'),
        ]

    def __str__(self):
        return f"Trial {self.id} - {self.conversation_state}"


class VoiceNote(models.Model):
    """
    One downloaded, content-hashed answer to one question of a trial.
    At most one row exists per (trial, question_index).
    """

    class DownloadStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        DOWNLOADING = 'downloading', 'Downloading'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    free_trial = models.ForeignKey(
        FreeTrial,
        on_delete=models.CASCADE,
        related_name='voice_notes'
    )
    question_index = models.PositiveIntegerField()
    question_text = models.TextField()
    media_id = models.CharField(max_length=255)
    media_url = models.TextField(null=True, blank=True)
    local_file_path = models.TextField(null=True, blank=True)
    mime_type = models.CharField(max_length=100, null=True, blank=True)
    media_sha256 = models.CharField(max_length=64, null=True, blank=True)
    download_status = models.CharField(
        max_length=20,
        choices=DownloadStatus.choices,
        default=DownloadStatus.PENDING
    )
    size_bytes = models.PositiveIntegerField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    failure_reason = models.CharField(max_length=255, null=True, blank=True)
    received_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'voice_notes'
        ordering = ['free_trial', 'question_index']
        constraints = [
            models.UniqueConstraint(
                fields=['free_trial', 'question_index'],
                name='voice_notes_trial_question_idx'
            ),
        ]

    def __str__(self):
        return f"Voice note Q{self.question_index} for Trial {self.free_trial_id} - {self.download_status}"


class InboundMessage(models.Model):
    """
    Every webhook delivery from the messaging provider.
    Keyed by the provider message id for transport-level dedup and kept
    as an audit trail of what the storyteller sent.
    """

    class Kind(models.TextChoices):
        TEXT = 'text', 'Text'
        VOICE = 'voice', 'Voice note'
        OTHER = 'other', 'Other media'

    class Status(models.TextChoices):
        RECEIVED = 'RECEIVED', 'Received'
        PROCESSED = 'PROCESSED', 'Processed'
        IGNORED = 'IGNORED', 'Ignored'
        FAILED = 'FAILED', 'Failed'

    provider_message_id = models.CharField(max_length=64, unique=True)
    sender_phone = models.CharField(max_length=20, db_index=True)
    kind = models.CharField(max_length=10, choices=Kind.choices, default=Kind.TEXT)
    body = models.TextField(blank=True, default='')
    media_url = models.TextField(null=True, blank=True)
    media_content_type = models.CharField(max_length=100, null=True, blank=True)
    free_trial = models.ForeignKey(
        FreeTrial,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='inbound_messages'
    )
    question_index = models.PositiveIntegerField(null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
        db_index=True
    )
    outcome = models.CharField(max_length=100, null=True, blank=True)
    raw_payload = models.JSONField()
    source_headers = models.JSONField(null=True, blank=True)
    received_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'inbound_messages'
        ordering = ['-received_at']

    def __str__(self):
        return f"Inbound {self.provider_message_id} ({self.kind}) - {self.status}"
