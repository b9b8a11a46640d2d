# Overview: Request decorators for API routes; store context supplied by the gateway.

from functools import wraps

from flask import g, jsonify, request

from .errors import LedgerError
from .validation import coerce_int


STORE_HEADER = "X-Store-Id"
USER_HEADER = "X-User-Id"


def require_store_context(f):
    """
    Require store context supplied by the authenticating gateway.

    Sets the following Flask g attributes:
    - g.store_id: Store every query of the request is scoped to - REQUIRED
    - g.user_id: Acting user for audit (may be None)

    Returns 401 if the store header is missing or malformed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_store = request.headers.get(STORE_HEADER)
        if not raw_store:
            return jsonify({"error": "Store context required", "code": "store_context_required"}), 401
        try:
            g.store_id = coerce_int(raw_store, STORE_HEADER, minimum=1)
            g.user_id = coerce_int(request.headers.get(USER_HEADER), USER_HEADER, minimum=1, required=False)
        except LedgerError as exc:
            return jsonify({"error": exc.message, "code": "invalid_store_context"}), 401

        return f(*args, **kwargs)

    return decorated_function

