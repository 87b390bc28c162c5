from __future__ import annotations

import logging

from django.db.models.signals import post_migrate
from django.dispatch import receiver

from .models import WORK_STAGES, WorkStage

logger = logging.getLogger(__name__)


def ensure_work_stages():
    """Create missing work stages; existing rows keep their local edits."""
    created = 0
    for position, (code, name_en, name_ar) in enumerate(WORK_STAGES, start=1):
        _, was_created = WorkStage.objects.get_or_create(
            code=code,
            defaults={"name_en": name_en, "name_ar": name_ar, "order": position},
        )
        created += int(was_created)
    return created


@receiver(post_migrate)
def seed_work_stages(sender, **kwargs):
    if getattr(sender, "label", None) != "order_processing":
        return
    created = ensure_work_stages()
    if created:
        logger.info("Seeded %d work stage(s)", created)
