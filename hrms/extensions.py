from flask import current_app, g, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address


def _rate_limit_key():
    """Key: tenant + caller id when supplied; otherwise client IP."""
    # Limits are checked before blueprint guards run, so fall back to the raw headers
    company = getattr(g, "company_code", None) or request.headers.get(
        current_app.config.get("COMPANY_CODE_HEADER", "X-Company-Code"), ""
    ).strip().upper()
    user = getattr(g, "current_user_id", None) or request.headers.get(
        current_app.config.get("USER_ID_HEADER", "X-User-Id"), ""
    ).strip()
    if company and user:
        return f"tenant:{company}:user:{user}"
    if company:
        return f"tenant:{company}:ip:{get_remote_address()}"
    return get_remote_address()


# Storage is configured in create_app() via limiter.init_app(...).
limiter = Limiter(key_func=_rate_limit_key)
