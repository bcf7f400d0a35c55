from flask import current_app, g, request

from .registry import get_registry, normalize_company_code


def current_company_code() -> str:
    """
    Company code for this request. The auth layer sets g.company_code; the
    configured header is accepted as a fallback. Raises MissingTenant.
    """
    code = getattr(g, "company_code", None)
    if not code:
        header = current_app.config.get("COMPANY_CODE_HEADER", "X-Company-Code")
        code = request.headers.get(header)
    return normalize_company_code(code)


def current_actor(default="System"):
    actor = getattr(g, "current_user_id", None)
    if not actor:
        header = current_app.config.get("USER_ID_HEADER", "X-User-Id")
        actor = (request.headers.get(header) or "").strip()
    return actor or default


def resolve_handle(entity_name: str, schema):
    return get_registry().resolve(current_company_code(), entity_name, schema)
