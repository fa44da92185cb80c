"""
URL configuration for story_gateway project.
"""
from django.contrib import admin
from django.urls import path, include

from trials.urls import api_urlpatterns, webhook_urlpatterns

urlpatterns = [
    path('admin/', admin.site.urls),
    path('webhooks/', include(webhook_urlpatterns)),
    path('api/', include(api_urlpatterns)),
]
