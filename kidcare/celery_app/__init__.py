"""
Celery application package for background indexing.

This package provides:
- Celery app configuration
- Task definitions for vector re-indexing and retention
"""

from kidcare.celery_app.celery import celery_app

__all__ = ["celery_app"]
