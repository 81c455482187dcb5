"""
Celery configuration for Lead Sync Gateway.

Only best-effort side effects run on Celery; the dual-write retry queue is
process-local and lives on the ASGI event loop.
"""
import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'lead_sync.settings')

app = Celery('lead_sync')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
