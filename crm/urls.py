"""
URL configuration for crm app.
"""
from django.urls import path
from django.views.decorators.csrf import csrf_exempt

from crm.views import DiagnosticView, WebhookView

urlpatterns = [
    path('events/', csrf_exempt(WebhookView.as_view()), name='lead-events'),
    path('diagnostic/', DiagnosticView.as_view(), name='lead-diagnostic'),
]
