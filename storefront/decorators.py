from functools import wraps

from django.http import JsonResponse


def staff_required(view_func):
    """Staff-only JSON endpoints: 401 when anonymous, 403 when not staff."""

    @wraps(view_func)
    def wrapper(request, *args, **kwargs):
        user = request.user
        if not user.is_authenticated:
            return JsonResponse({"ok": False, "error": "Authentication required"}, status=401)
        if not (user.is_staff or user.is_superuser):
            return JsonResponse({"ok": False, "error": "Staff privileges required"}, status=403)
        return view_func(request, *args, **kwargs)

    return wrapper
