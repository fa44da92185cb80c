# Generated migration for FreeTrial, VoiceNote and InboundMessage models

from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='FreeTrial',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('customer_phone', models.CharField(max_length=20)),
                ('buyer_name', models.CharField(max_length=255)),
                ('storyteller_name', models.CharField(max_length=255)),
                ('selected_album', models.CharField(max_length=255)),
                ('storyteller_phone', models.CharField(blank=True, db_index=True, max_length=20, null=True)),
                ('conversation_state', models.CharField(choices=[('awaiting_initial_contact', 'Awaiting initial contact'), ('welcome_sent', 'Welcome sent'), ('awaiting_readiness', 'Awaiting readiness'), ('questioning', 'Questioning'), ('reminder_sent', 'Reminder sent'), ('completed', 'Completed'), ('stalled', 'Stalled')], default='awaiting_initial_contact', max_length=50)),
                ('current_question_index', models.PositiveIntegerField(default=0)),
                ('retry_readiness_at', models.DateTimeField(blank=True, null=True)),
                ('retry_count', models.PositiveIntegerField(default=0)),
                ('last_readiness_response', models.CharField(blank=True, choices=[('affirmative', 'Affirmative'), ('negative', 'Negative'), ('ambiguous', 'Ambiguous'), ('no_reply', 'No reply')], max_length=50, null=True)),
                ('welcome_sent_at', models.DateTimeField(blank=True, null=True)),
                ('readiness_asked_at', models.DateTimeField(blank=True, null=True)),
                ('last_question_sent_at', models.DateTimeField(blank=True, null=True)),
                ('reminder_sent_at', models.DateTimeField(blank=True, null=True)),
                ('next_question_scheduled_for', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'free_trials',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='VoiceNote',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('question_index', models.PositiveIntegerField()),
                ('question_text', models.TextField()),
                ('media_id', models.CharField(max_length=255)),
                ('media_url', models.TextField(blank=True, null=True)),
                ('local_file_path', models.TextField(blank=True, null=True)),
                ('mime_type', models.CharField(blank=True, max_length=100, null=True)),
                ('media_sha256', models.CharField(blank=True, max_length=64, null=True)),
                ('download_status', models.CharField(choices=[('pending', 'Pending'), ('downloading', 'Downloading'), ('completed', 'Completed'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('size_bytes', models.PositiveIntegerField(blank=True, null=True)),
                ('attempts', models.PositiveIntegerField(default=0)),
                ('failure_reason', models.CharField(blank=True, max_length=255, null=True)),
                ('received_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('free_trial', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='voice_notes', to='trials.freetrial')),
            ],
            options={
                'db_table': 'voice_notes',
                'ordering': ['free_trial', 'question_index'],
            },
        ),
        migrations.CreateModel(
            name='InboundMessage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('provider_message_id', models.CharField(max_length=64, unique=True)),
                ('sender_phone', models.CharField(db_index=True, max_length=20)),
                ('kind', models.CharField(choices=[('text', 'Text'), ('voice', 'Voice note'), ('other', 'Other media')], default='text', max_length=10)),
                ('body', models.TextField(blank=True, default='')),
                ('media_url', models.TextField(blank=True, null=True)),
                ('media_content_type', models.CharField(blank=True, max_length=100, null=True)),
                ('question_index', models.PositiveIntegerField(blank=True, null=True)),
                ('status', models.CharField(choices=[('RECEIVED', 'Received'), ('PROCESSED', 'Processed'), ('IGNORED', 'Ignored'), ('FAILED', 'Failed')], db_index=True, default='RECEIVED', max_length=20)),
                ('outcome', models.CharField(blank=True, max_length=100, null=True)),
                ('raw_payload', models.JSONField()),
                ('source_headers', models.JSONField(blank=True, null=True)),
                ('received_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('free_trial', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='inbound_messages', to='trials.freetrial')),
            ],
            options={
                'db_table': 'inbound_messages',
                'ordering': ['-received_at'],
            },
        ),
        migrations.AddIndex(
            model_name='freetrial',
            index=models.Index(fields=['conversation_state'], name='free_trials_state_idx'),
        ),
        migrations.AddIndex(
            model_name='freetrial',
            index=models.Index(fields=['retry_readiness_at'], name='free_trials_retry_ready_idx'),
        ),
        migrations.AddIndex(
            model_name='freetrial',
            index=models.Index(fields=['next_question_scheduled_for'], name='free_trials_next_question_idx'),
        ),
        migrations.AddConstraint(
            model_name='voicenote',
            constraint=models.UniqueConstraint(fields=('free_trial', 'question_index'), name='voice_notes_trial_question_idx'),
        ),
    ]
