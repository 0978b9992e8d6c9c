"""Integrations package (Celery)."""
