# api/admin.py
"""
Admin-only security dashboard endpoints
"""

from flask import Blueprint, current_app, jsonify, request

from middleware.security import rate_limit, require_admin

admin_bp = Blueprint('admin', __name__)


@admin_bp.route('/api/admin/security/metrics', methods=['GET'])
@rate_limit('api')
@require_admin
def security_metrics():
    """Security event counts for the last ``hours`` (default 24, max 720)"""
    hours = request.args.get('hours', 24, type=int)
    hours = min(max(hours, 1), 720)

    metrics = current_app.security_audit.metrics(hours)
    return jsonify({'success': True, 'metrics': metrics})
