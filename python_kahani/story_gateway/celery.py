"""
Celery configuration for the Story Gateway service.

The beat schedule in settings drives the conversation scheduler tick.
"""
import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'story_gateway.settings')

app = Celery('story_gateway')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
