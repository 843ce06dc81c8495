"""
Celery application for asynchronous order notifications and reports.
"""
import os

from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('checkout')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
