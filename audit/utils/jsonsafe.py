from decimal import Decimal
from uuid import UUID
from datetime import date, datetime, time
from django.db.models import Model, QuerySet


def json_safe(obj):
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, Decimal):
        # keep the exact weight/price text, floats would drift
        return str(obj)
    if isinstance(obj, (UUID,)):
        return str(obj)
    if isinstance(obj, (datetime, date, time)):
        return obj.isoformat()
    if isinstance(obj, Model):
        pk = getattr(obj, "pk", None)
        return json_safe(pk)
    if isinstance(obj, QuerySet):
        return [json_safe(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [json_safe(v) for v in obj]
    pk = getattr(obj, "pk", None)
    if pk is not None:
        return json_safe(pk)
    return str(obj)


def snapshot(instance, fields=None):
    """Return a JSON-safe ``{field: value}`` dict of concrete model fields.

    Foreign keys are captured by their ``attname`` (``order_id``) so the
    snapshot never triggers extra queries.
    """
    data = {}
    for field in instance._meta.concrete_fields:
        if fields is not None and field.name not in fields and field.attname not in fields:
            continue
        data[field.attname] = json_safe(getattr(instance, field.attname))
    return data
