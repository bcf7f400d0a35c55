from flask import Blueprint, g, jsonify

from hrms.errors import MissingTenant
from hrms.tenancy.context import current_company_code

bp = Blueprint("feedback", __name__)


@bp.before_request
def _require_company_feedback():
    """No tenant, no core logic: reject before any registry access."""
    try:
        g.company_code = current_company_code()
    except MissingTenant as exc:
        return jsonify(exc.to_dict()), exc.status_code
    return None


# Import submodules so their routes register on the same bp
from . import routes  # noqa: E402,F401
