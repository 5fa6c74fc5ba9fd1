import json


def json_body(request):
    """Request body as a JSON object, or None if it is not one."""
    try: data = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError): return None
    return data if isinstance(data, dict) else None
