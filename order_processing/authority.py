from django.conf import settings
from django.contrib.auth import get_user_model
from django.db.models import Q
from django.utils.module_loading import import_string

APP_LABEL = "order_processing"

CAPABILITIES = (
    "stage_creation",
    "stage_review",
    "stage_material_reservation",
    "stage_sorting",
    "stage_cutting",
    "stage_packaging",
    "stage_invoicing",
    "stage_delivery",
    "skip_stage",
    "cancel_order",
    "override_sorting",
    "soft_delete_order",
)


class PermissionAuthority:
    """Answers "may this actor do X" from Django model permissions.

    Active superusers hold every capability. Everyone else needs the
    ``order_processing.<capability>`` permission, directly or via a group.
    """

    def has_capability(self, actor, capability):
        if actor is None or not getattr(actor, "is_authenticated", False):
            return False
        if not getattr(actor, "is_active", False):
            return False
        if actor.is_superuser:
            return True
        return actor.has_perm(f"{APP_LABEL}.{capability}")

    def current_actor(self, request):
        user = getattr(request, "user", None)
        if user is None or not user.is_authenticated:
            return None
        return user

    def actors_with_capability(self, capability):
        User = get_user_model()
        perm = Q(user_permissions__codename=capability, user_permissions__content_type__app_label=APP_LABEL)
        group_perm = Q(
            groups__permissions__codename=capability,
            groups__permissions__content_type__app_label=APP_LABEL,
        )
        return (
            User.objects.filter(is_active=True)
            .filter(perm | group_perm | Q(is_superuser=True))
            .distinct()
            .order_by("pk")
        )


def get_authority():
    path = getattr(
        settings, "ORDERFLOW_AUTHORITY_CLASS", "order_processing.authority.PermissionAuthority"
    )
    return import_string(path)()


def has_capability(actor, capability):
    return get_authority().has_capability(actor, capability)


def current_actor(request):
    return get_authority().current_actor(request)


def actors_with_capability(capability):
    return get_authority().actors_with_capability(capability)
