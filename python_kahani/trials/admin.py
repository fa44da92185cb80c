"""
Django admin configuration for trials app.
"""
from django.contrib import admin
from trials.models import FreeTrial, InboundMessage, VoiceNote


class VoiceNoteInline(admin.TabularInline):
    """Inline display of recorded answers for a trial."""
    model = VoiceNote
    extra = 0
    readonly_fields = ('question_index', 'download_status', 'mime_type', 'size_bytes', 'local_file_path',
                       'attempts', 'received_at')
    fields = readonly_fields
    can_delete = False


@admin.register(FreeTrial)
class FreeTrialAdmin(admin.ModelAdmin):
    """Admin interface for FreeTrial model."""

    list_display = ('id', 'buyer_name', 'storyteller_name', 'conversation_state', 'current_question_index',
                    'retry_count', 'created_at')
    list_filter = ('conversation_state', 'created_at')
    search_fields = ('id', 'customer_phone', 'storyteller_phone', 'buyer_name', 'storyteller_name')
    readonly_fields = ('id', 'created_at', 'updated_at', 'welcome_sent_at', 'readiness_asked_at',
                       'last_question_sent_at', 'reminder_sent_at')

    fieldsets = (
        ('Trial', {
            'fields': ('id', 'buyer_name', 'customer_phone', 'storyteller_name', 'storyteller_phone',
                       'selected_album')
        }),
        ('Conversation', {
            'fields': ('conversation_state', 'current_question_index', 'retry_count', 'last_readiness_response')
        }),
        ('Timers', {
            'fields': ('welcome_sent_at', 'readiness_asked_at', 'retry_readiness_at', 'last_question_sent_at',
                       'reminder_sent_at', 'next_question_scheduled_for'),
            'classes': ('collapse',)
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    inlines = [VoiceNoteInline]


@admin.register(VoiceNote)
class VoiceNoteAdmin(admin.ModelAdmin):
    """Admin interface for VoiceNote model."""

    list_display = ('id', 'free_trial', 'question_index', 'download_status', 'size_bytes', 'received_at')
    list_filter = ('download_status', 'received_at')
    search_fields = ('free_trial__id', 'media_id', 'media_sha256')
    readonly_fields = ('free_trial', 'question_index', 'question_text', 'media_id', 'media_url',
                       'local_file_path', 'mime_type', 'media_sha256', 'size_bytes', 'attempts',
                       'failure_reason', 'received_at', 'updated_at')

    def has_add_permission(self, request):
        """Voice notes only come in through the webhook."""
        return False


@admin.register(InboundMessage)
class InboundMessageAdmin(admin.ModelAdmin):
    """Admin interface for InboundMessage model."""

    list_display = ('id', 'provider_message_id', 'kind', 'status', 'outcome', 'free_trial', 'received_at')
    list_filter = ('kind', 'status', 'received_at')
    search_fields = ('provider_message_id', 'sender_phone', 'free_trial__id')
    readonly_fields = ('provider_message_id', 'sender_phone', 'kind', 'body', 'media_url', 'media_content_type',
                       'free_trial', 'question_index', 'status', 'outcome', 'raw_payload', 'source_headers',
                       'received_at', 'updated_at')

    def has_add_permission(self, request):
        """Disable manual message creation through admin."""
        return False

    def has_delete_permission(self, request, obj=None):
        """Keep the delivery audit trail intact."""
        return False
