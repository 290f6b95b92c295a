"""HTTP tests for the deployment blueprint and health checks."""

from unittest.mock import patch

import pytest

from app.core.exceptions import ExternalServiceError
from app.models import db
from app.models.deployment import DeployedReport, DeploymentLogEntry, TenantTab
from app.services import hierarchy_reconciler

from conftest import StubConnector, scanned


def _url(org_id, suffix=""):
    return f"/api/v1/organizations/{org_id}{suffix}"


@pytest.fixture()
def org_with_catalog(make_organization, make_template):
    org = make_organization(lms="APTEM", english_maths="BKSB", workspace_id="ws-api")
    templates = {
        "core": make_template("APTEM-BKSB - Tutor v1.0"),
        "lms": make_template("APTEM - Immediate Priorities v1.5"),
        "universal": make_template("Universal Dashboard v1.0"),
        "other": make_template("BUD - Tutor v1.0"),
    }
    db.session.commit()
    return org, templates


# ── Catalog match ────────────────────────────────────────────────────────────


def test_list_matching_reports(client, org_with_catalog):
    org, templates = org_with_catalog
    res = client.get(_url(org.id, "/deploy-reports"))
    assert res.status_code == 200
    body = res.get_json()
    assert body["provider_code"] == "APTEM-BKSB"
    assert body["total_matching"] == 3
    assert body["pending"] == 3
    assert [r["template_id"] for r in body["reports"]] == [
        templates["core"].id, templates["lms"].id, templates["universal"].id,
    ]


def test_list_matching_reports_filtered_by_match_type(client, org_with_catalog):
    org, templates = org_with_catalog
    res = client.get(_url(org.id, "/deploy-reports?match_type=universal"))
    assert [r["template_id"] for r in res.get_json()["reports"]] == [templates["universal"].id]

    res = client.get(_url(org.id, "/deploy-reports?match_type=best"))
    assert res.status_code == 400
    assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"


def test_unknown_organization_is_404(client):
    res = client.get(_url(4242, "/deploy-reports"))
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ── Bulk deploy ──────────────────────────────────────────────────────────────


def test_auto_deploy_then_repeat_is_skipped(client, org_with_catalog):
    org, templates = org_with_catalog
    payload = {"mode": "auto", "report_ids": [templates["core"].id, templates["universal"].id]}

    res = client.post(_url(org.id, "/deploy-reports"), json=payload, headers={"X-Actor": "alice"})
    assert res.status_code == 201
    assert res.get_json()["deployed"] == 2

    res = client.post(_url(org.id, "/deploy-reports"), json=payload)
    assert res.status_code == 200
    body = res.get_json()
    assert body["deployed"] == 0
    assert len(body["skipped"]) == 2

    users = {e.triggered_by_user for e in DeploymentLogEntry.query.filter_by(action="deploy")}
    assert users == {"alice"}


def test_auto_deploy_without_workspace_is_422(client, make_organization, make_template):
    org = make_organization(lms="APTEM", workspace_id=None)
    template = make_template("APTEM - Tutor v1.0")
    db.session.commit()

    res = client.post(_url(org.id, "/deploy-reports"), json={"mode": "auto", "report_ids": [template.id]})
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_CONFIGURATION"


@pytest.mark.parametrize(
    "payload,status",
    [
        ({}, 400),
        ({"mode": "auto"}, 400),
        ({"mode": "auto", "report_ids": ["1"]}, 400),
        ({"mode": "manual", "deployments": "r-1"}, 400),
        ({"mode": "sideways", "deployments": [{"template_id": 1}]}, 422),
    ],
)
def test_deploy_rejects_bad_input(client, org_with_catalog, payload, status):
    org, _ = org_with_catalog
    res = client.post(_url(org.id, "/deploy-reports"), json=payload)
    assert res.status_code == status


def test_manual_deploy_archive_and_log(client, org_with_catalog):
    org, templates = org_with_catalog
    res = client.post(_url(org.id, "/deploy-reports"), json={
        "mode": "manual",
        "deployments": [{"template_id": templates["lms"].id, "powerbi_report_id": "r-lms"}],
    })
    assert res.status_code == 201
    report_id = res.get_json()["deployments"][0]["id"]

    res = client.delete(_url(org.id, "/deploy-reports"), json={"report_ids": [report_id]})
    assert res.status_code == 200
    assert res.get_json()["report_ids"] == [report_id]
    assert db.session.get(DeployedReport, report_id).deployment_status == "archived"

    res = client.get(_url(org.id, "/deployment-log?limit=10"))
    assert [e["action"] for e in res.get_json()["items"]] == ["delete", "deploy"]

    res = client.get(_url(org.id, "/deployment-log?limit=abc"))
    assert res.status_code == 400


def test_malformed_item_does_not_abort_the_batch(client, org_with_catalog):
    org, templates = org_with_catalog
    res = client.post(_url(org.id, "/deploy-reports"), json={
        "mode": "bulk",
        "deployments": [
            {"template_id": [templates["core"].id], "powerbi_report_id": "r-bad"},
            {"template_id": str(templates["lms"].id), "powerbi_report_id": "r-lms"},
        ],
    })
    assert res.status_code == 201
    body = res.get_json()
    assert body["deployed"] == 1
    assert body["deployments"][0]["report_template_id"] == templates["lms"].id
    assert [f["template_id"] for f in body["failed"]] == [[templates["core"].id]]


def test_confirm_and_fail_transitions(client, org_with_catalog):
    org, templates = org_with_catalog
    client.post(_url(org.id, "/deploy-reports"), json={
        "mode": "auto", "report_ids": [templates["core"].id, templates["lms"].id],
    })
    first, second = [r.id for r in DeployedReport.query.order_by(DeployedReport.id)]

    res = client.post(_url(org.id, f"/deploy-reports/{first}/confirm"), json={"powerbi_report_id": "r-1"})
    assert res.status_code == 200
    assert res.get_json()["deployment_status"] == "active"

    res = client.post(_url(org.id, f"/deploy-reports/{second}/fail"), json={"error": "timeout"})
    assert res.get_json()["deployment_status"] == "failed"

    res = client.post(_url(org.id, f"/deploy-reports/{second}/confirm"))
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_BUSINESS_RULE"


# ── Workspace scan & tabs ────────────────────────────────────────────────────


@pytest.fixture()
def scan_catalog(org_with_catalog, make_global_tab):
    org, templates = org_with_catalog
    make_global_tab("learners", "Tutor", templates["core"], page_name="Overview")
    db.session.commit()
    return org, templates


def test_scan_deploys_matching_tabs(client, scan_catalog):
    org, _ = scan_catalog
    connector = StubConnector([scanned("r-tutor", "APTEM-BKSB - Tutor v1.0", "Overview")])
    with patch.object(hierarchy_reconciler.PowerBIGateway, "from_app_config", return_value=connector):
        res = client.post(_url(org.id, "/reports/scan"), headers={"X-Actor": "ops"})

    assert res.status_code == 200
    body = res.get_json()
    assert body["workspace_name"] == org.powerbi_workspace_name
    assert [d["tab"] for d in body["deployed"]] == ["Tutor"]
    assert connector.calls == ["ws-api"]
    scan_log = DeploymentLogEntry.query.filter_by(action="scan").one()
    assert scan_log.triggered_by_user == "ops"


def test_scan_without_credentials_is_422(client, scan_catalog):
    org, _ = scan_catalog
    res = client.post(_url(org.id, "/reports/scan"))
    assert res.status_code == 422
    assert res.get_json()["code"] == "ERR_CONFIGURATION"


def test_scan_upstream_failure_is_502(client, scan_catalog):
    org, _ = scan_catalog
    connector = StubConnector(error=ExternalServiceError("powerbi", "HTTP 503", status_code=503))
    with patch.object(hierarchy_reconciler.PowerBIGateway, "from_app_config", return_value=connector):
        res = client.post(_url(org.id, "/reports/scan"))
    assert res.status_code == 502
    assert res.get_json()["code"] == "ERR_EXTERNAL_SERVICE"
    assert DeploymentLogEntry.query.filter_by(action="scan", status="failed").count() == 1


def test_deploy_tab_requires_fields(client, org_with_catalog):
    org, _ = org_with_catalog
    res = client.post(_url(org.id, "/reports/deploy-tab"), json={"module_name": "kpi"})
    assert res.status_code == 400
    assert set(res.get_json()["details"]["missing"]) == {"tab_name", "powerbi_report_id", "page_name"}


def test_deploy_hide_and_remove_tab(client, org_with_catalog):
    org, _ = org_with_catalog
    payload = {
        "module_name": "kpi", "tab_name": "Headline",
        "powerbi_report_id": "r-kpi", "page_name": "Page 1",
    }
    res = client.post(_url(org.id, "/reports/deploy-tab"), json=payload)
    assert res.status_code == 201
    tab_id = res.get_json()["tab"]["id"]

    res = client.post(_url(org.id, "/reports/deploy-tab"), json=payload)
    assert res.status_code == 200

    res = client.post(_url(org.id, "/reports/hide-tab"), json={"module_name": "kpi", "tab_name": "Extra"})
    assert res.status_code == 200
    assert res.get_json()["tab"]["override_mode"] == "hidden"

    res = client.delete(_url(org.id, f"/reports/tabs/{tab_id}"))
    assert res.status_code == 200
    assert not db.session.get(TenantTab, tab_id).is_active

    res = client.delete(_url(org.id, "/reports/tabs/9999"))
    assert res.status_code == 404


# ── Catalog helpers & health ─────────────────────────────────────────────────


def test_register_template(client):
    res = client.post("/api/v1/report-templates", json={"name": "ONEFILE-SF - Sales Lead v2.0"})
    assert res.status_code == 201
    body = res.get_json()
    assert body["lms_code"] == "ONEFILE"
    assert body["crm_code"] == "SF"

    res = client.post("/api/v1/report-templates", json={"category": "x"})
    assert res.status_code == 400


def test_parse_provider_codes_never_fails(client):
    res = client.get("/api/v1/provider-codes/parse?name=APTEM-XYZ - Coach v3.1")
    body = res.get_json()
    assert res.status_code == 200
    assert body["lms_code"] == "APTEM"
    assert body["role_name"] == "Coach"
    assert body["version"] == "3.1"

    assert client.get("/api/v1/provider-codes/parse").status_code == 200


def test_health_checks(client):
    assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}
    body = client.get("/api/v1/health/live").get_json()
    assert body["checks"]["database"]["status"] == "ok"
    assert body["checks"]["powerbi"]["status"] == "not_configured"
    assert client.get("/api/v1/health/ready").headers.get("X-Request-ID")
