"""
Custom route decorators.

- json_body_required: ensures the request body is a JSON object and
  exposes it as g.json_body.
"""

from functools import wraps

from flask import g, request

from paygate.errors import ValidationError


def json_body_required(f):
    """Reject requests whose body is not a JSON object (400)."""

    @wraps(f)
    def decorated(*args, **kwargs):
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        g.json_body = body
        return f(*args, **kwargs)

    return decorated
