"""
Screenshot persistence through Django's default storage.
"""

import logging

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage

logger = logging.getLogger(__name__)


def capture_storage_name(job) -> str:
    name = f"{job.id}.png"
    if job.collection_id:
        name = f"{job.collection_id}/{name}"
    return f"{settings.CAPTURE_STORAGE_PREFIX}/{job.project_id}/{name}"


def save_capture(job, image: bytes) -> str:
    """Store the image and return the name storage actually used."""
    name = default_storage.save(capture_storage_name(job), ContentFile(image))
    logger.debug(f"Stored {len(image)} bytes for job {job.id} at {name}")
    return name


def delete_capture(name: str) -> None:
    if name and default_storage.exists(name):
        default_storage.delete(name)
