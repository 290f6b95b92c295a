"""
Deployment Blueprint: catalog matching, bulk deploy and workspace reconciliation.

  Catalog match     GET    /api/v1/organizations/<org_id>/deploy-reports
  Bulk deploy       POST   /api/v1/organizations/<org_id>/deploy-reports
  Archive           DELETE /api/v1/organizations/<org_id>/deploy-reports
  Confirm pending   POST   /api/v1/organizations/<org_id>/deploy-reports/<report_id>/confirm
  Mark failed       POST   /api/v1/organizations/<org_id>/deploy-reports/<report_id>/fail
  Audit trail       GET    /api/v1/organizations/<org_id>/deployment-log

  Workspace scan    POST   /api/v1/organizations/<org_id>/reports/scan
  Deploy one tab    POST   /api/v1/organizations/<org_id>/reports/deploy-tab
  Hide tab          POST   /api/v1/organizations/<org_id>/reports/hide-tab
  Remove tab        DELETE /api/v1/organizations/<org_id>/reports/tabs/<tab_id>

  Register template POST   /api/v1/report-templates
  Name preview      GET    /api/v1/provider-codes/parse?name=...

The acting principal for audit entries is read from the X-Actor header.
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from app.core.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.services import catalog_matcher, deployment_service, hierarchy_reconciler
from app.services.match_scoring import MATCH_TYPES
from app.services.provider_codes import build_provider_code, parse_template_name
from app.utils.errors import E, api_error
from app.utils.helpers import get_actor, parse_id_list, parse_optional_int, require_fields

logger = logging.getLogger(__name__)

deployment_bp = Blueprint("deployment_bp", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@deployment_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, f"{error.resource} not found")


@deployment_bp.errorhandler(ConfigurationError)
def _handle_configuration(error: ConfigurationError):
    return api_error(E.CONFIGURATION, str(error), details=error.details)


@deployment_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.BUSINESS_RULE, str(error), details=error.details)


@deployment_bp.errorhandler(ExternalServiceError)
def _handle_external(error: ExternalServiceError):
    return api_error(
        E.EXTERNAL_SERVICE, str(error),
        details={"service": error.service, "status_code": error.status_code},
    )


@deployment_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unexpected error in deployment_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Catalog match & bulk deploy  (/organizations/<org_id>/deploy-reports)
# ═════════════════════════════════════════════════════════════════════════


@deployment_bp.route("/organizations/<int:org_id>/deploy-reports", methods=["GET"])
def list_matching_reports(org_id):
    """Ranked catalog templates eligible for the organization, with deployment stats.

    Query params:
        match_type: optional filter (exact_match, core_match, ...)
    """
    match_type = request.args.get("match_type")
    if match_type and match_type not in MATCH_TYPES:
        return api_error(
            E.VALIDATION_INVALID, f"Invalid match_type: {match_type}",
            details={"allowed": list(MATCH_TYPES)},
        )

    codes = catalog_matcher.get_organization_provider_codes(org_id)
    stats = catalog_matcher.get_deployment_stats(org_id)
    candidates = stats["candidates"]
    if match_type:
        candidates = [c for c in candidates if c.match_type == match_type]

    return jsonify({
        "organization_id": org_id,
        "provider_codes": codes.to_dict(),
        "provider_code": build_provider_code(codes),
        "total_matching": stats["total_matching"],
        "deployed": stats["deployed"],
        "pending": stats["pending"],
        "reports": [c.to_dict() for c in candidates],
    }), 200


@deployment_bp.route("/organizations/<int:org_id>/deploy-reports", methods=["POST"])
def deploy_reports(org_id):
    """Deploy selected templates.

    Body:
        mode: "auto" | "manual" | "bulk"
        report_ids: [template_id, ...]                       (auto)
        deployments: [{template_id, powerbi_report_id,
                       powerbi_workspace_id?, powerbi_dataset_id?, notes?}]  (manual / bulk)
    """
    data = request.get_json(silent=True) or {}
    mode = data.get("mode")
    if not mode:
        return api_error(E.VALIDATION_REQUIRED, "mode is required")

    template_ids = deployments = None
    if mode == "auto":
        template_ids, err = parse_id_list(data.get("report_ids"), "report_ids")
        if err:
            return err
    else:
        deployments = data.get("deployments")
        if deployments is not None and (
            not isinstance(deployments, list) or not all(isinstance(d, dict) for d in deployments)
        ):
            return api_error(E.VALIDATION_INVALID, "deployments must be a list of objects")

    result = deployment_service.deploy_reports(
        org_id, mode, template_ids=template_ids, deployments=deployments, actor=get_actor(),
    )
    status = 201 if result["deployed"] else 200
    return jsonify(result), status


@deployment_bp.route("/organizations/<int:org_id>/deploy-reports", methods=["DELETE"])
def remove_deployed_reports(org_id):
    """Archive deployed reports. Body: {report_ids: [...]}"""
    data = request.get_json(silent=True) or {}
    report_ids, err = parse_id_list(data.get("report_ids"), "report_ids")
    if err:
        return err
    result = deployment_service.remove_deployed_reports(org_id, report_ids, actor=get_actor())
    return jsonify(result), 200


@deployment_bp.route(
    "/organizations/<int:org_id>/deploy-reports/<int:report_id>/confirm", methods=["POST"],
)
def confirm_deployment(org_id, report_id):
    data = request.get_json(silent=True) or {}
    report = deployment_service.confirm_deployment(
        org_id, report_id, actor=get_actor(), powerbi_report_id=data.get("powerbi_report_id"),
    )
    return jsonify(report.to_dict()), 200


@deployment_bp.route(
    "/organizations/<int:org_id>/deploy-reports/<int:report_id>/fail", methods=["POST"],
)
def mark_deployment_failed(org_id, report_id):
    data = request.get_json(silent=True) or {}
    report = deployment_service.mark_deployment_failed(
        org_id, report_id, error=str(data.get("error") or ""), actor=get_actor(),
    )
    return jsonify(report.to_dict()), 200


@deployment_bp.route("/organizations/<int:org_id>/deployment-log", methods=["GET"])
def list_deployment_log(org_id):
    limit, err = parse_optional_int(
        request.args.get("limit"), "limit", default=deployment_service.DEFAULT_LOG_LIMIT,
    )
    if err:
        return err
    entries = deployment_service.list_deployment_log(org_id, limit=limit)
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Workspace reconciliation  (/organizations/<org_id>/reports/...)
# ═════════════════════════════════════════════════════════════════════════


@deployment_bp.route("/organizations/<int:org_id>/reports/scan", methods=["POST"])
def scan_workspace(org_id):
    """Scan the organization's BI workspace and auto-deploy matching tabs."""
    result = hierarchy_reconciler.scan_organization_workspace(org_id, actor=get_actor())
    return jsonify(result), 200


@deployment_bp.route("/organizations/<int:org_id>/reports/deploy-tab", methods=["POST"])
def deploy_tab(org_id):
    """Deploy one tab.

    Body: {module_name, tab_name, powerbi_report_id, page_name, template_id?, sort_order?}
    """
    data = request.get_json(silent=True) or {}
    fields, err = require_fields(data, "module_name", "tab_name", "powerbi_report_id", "page_name")
    if err:
        return err
    template_id, err = parse_optional_int(data.get("template_id"), "template_id")
    if err:
        return err
    sort_order, err = parse_optional_int(data.get("sort_order"), "sort_order", default=0)
    if err:
        return err

    result = hierarchy_reconciler.deploy_tab(
        org_id,
        template_id=template_id,
        sort_order=sort_order,
        actor=get_actor(),
        **fields,
    )
    return jsonify(result), 201 if result["created"] else 200


@deployment_bp.route("/organizations/<int:org_id>/reports/hide-tab", methods=["POST"])
def hide_tab(org_id):
    """Hide a global tab for this organization. Body: {module_name, tab_name, global_tab_id?}"""
    data = request.get_json(silent=True) or {}
    fields, err = require_fields(data, "module_name", "tab_name")
    if err:
        return err
    global_tab_id, err = parse_optional_int(data.get("global_tab_id"), "global_tab_id")
    if err:
        return err
    result = hierarchy_reconciler.hide_tab(
        org_id, global_tab_id=global_tab_id, actor=get_actor(), **fields,
    )
    return jsonify(result), 200


@deployment_bp.route("/organizations/<int:org_id>/reports/tabs/<int:tab_id>", methods=["DELETE"])
def remove_tab(org_id, tab_id):
    tab = hierarchy_reconciler.remove_tab(org_id, tab_id, actor=get_actor())
    return jsonify(tab), 200


# ═════════════════════════════════════════════════════════════════════════
# Catalog helpers
# ═════════════════════════════════════════════════════════════════════════


@deployment_bp.route("/report-templates", methods=["POST"])
def create_template():
    """Register a catalog template. Body: {name, category?, description?, powerbi_report_id?}"""
    data = request.get_json(silent=True) or {}
    _, err = require_fields(data, "name")
    if err:
        return err
    template = deployment_service.create_template(data)
    return jsonify(template.to_dict()), 201


@deployment_bp.route("/provider-codes/parse", methods=["GET"])
def parse_provider_codes():
    """Preview how a template name will be parsed. Never fails for any name."""
    name = request.args.get("name", "")
    return jsonify({"name": name, **parse_template_name(name).to_dict()}), 200
