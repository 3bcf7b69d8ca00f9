import uuid

from django.core.cache import cache
from django.http import JsonResponse


def health_view(_request):
    """Report whether the cart cache accepts writes and reads them back."""
    cache_ok = False
    probe = f"health:{uuid.uuid4().hex}"
    try:
        cache.set(probe, "1", timeout=5)
        cache_ok = cache.get(probe) == "1"
        cache.delete(probe)
    except Exception:
        cache_ok = False

    ok = cache_ok
    code = 200 if ok else 503
    return JsonResponse(
        {"ok": ok, "components": {"cache": {"ok": cache_ok}}},
        status=code,
    )
