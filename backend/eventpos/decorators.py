# Overview: Request decorators for API routes; builds the calling actor from upstream identity headers.

from functools import wraps

from flask import g, jsonify, request

from .services.capability_service import Actor


HEADER_ORGANIZATION = "X-Organization-Id"
HEADER_USER = "X-User-Id"
HEADER_DEVICE = "X-Device-Id"
HEADER_CAPABILITIES = "X-Capabilities"


def _int_header(name: str):
    value = request.headers.get(name)
    if value is None or value == "":
        return None
    return int(value)


def require_actor(f):
    """
    Establish the calling actor.

    Identity is owned by the gateway in front of this service; it forwards the
    resolved organization, user or device and the granted capability codes as
    headers. Sets:
    - g.actor: Actor built from those headers
    - g.org_id: the actor's organization (tenant context)

    Returns 401 when the organization header is missing or malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            organization_id = _int_header(HEADER_ORGANIZATION)
            user_id = _int_header(HEADER_USER)
            device_id = _int_header(HEADER_DEVICE)
        except ValueError:
            return jsonify({"error": "Invalid identity headers", "details": {}}), 401

        if organization_id is None:
            return jsonify({"error": "Authentication required", "details": {}}), 401

        raw = request.headers.get(HEADER_CAPABILITIES, "")
        capabilities = frozenset(code.strip() for code in raw.split(",") if code.strip())

        g.actor = Actor(
            organization_id=organization_id,
            user_id=user_id,
            device_id=device_id,
            capabilities=capabilities,
        )
        g.org_id = organization_id
        return f(*args, **kwargs)

    return decorated_function
