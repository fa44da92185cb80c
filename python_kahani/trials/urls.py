"""
URL configuration for trials app.
"""
from django.urls import path
from trials.views import AlbumCompletionView, FreeTrialCreateView, InboundWebhookView

webhook_urlpatterns = [
    path('whatsapp/', InboundWebhookView.as_view(), name='whatsapp-webhook'),
]

api_urlpatterns = [
    path('trials/', FreeTrialCreateView.as_view(), name='trial-create'),
    path('trials/<uuid:trial_id>/album/', AlbumCompletionView.as_view(), name='trial-album'),
]
