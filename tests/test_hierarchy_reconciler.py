"""Tests for app.services.hierarchy_reconciler: workspace-scan auto-match and tab operations.

Test strategy
-------------
The BI workspace is replaced by ``StubConnector`` (conftest) or by passing a
pre-built scan straight to ``reconcile_workspace_scan``. Each test builds its
own catalog via the row factories; the autouse ``session`` fixture drops and
recreates tables afterwards.
"""

from unittest.mock import patch

import pytest

from app.core.exceptions import ConfigurationError, ExternalServiceError, NotFoundError
from app.models import db
from app.models.deployment import DeployedReport, DeploymentLogEntry, OrganizationModule, TenantTab
from app.services import hierarchy_reconciler


@pytest.fixture()
def catalog(make_organization, make_template, make_global_tab, make_scanned_report):
    """One organization, two templates, three global tabs and a matching scan."""
    org = make_organization(lms="APTEM", workspace_id="ws-1")
    learner = make_template("APTEM - Learner Progress v1.0")
    finance = make_template("Finance Overview v1.0")
    make_global_tab("learners", "Progress", learner, page_name="Progress Summary", sort_order=1)
    make_global_tab("learners", "Attendance", learner, sort_order=2)
    make_global_tab("finance", "Funding", finance)

    scan = [
        make_scanned_report("r-learner", "APTEM - Learner Progress v1.0", "Progress Summary", "attendance"),
        make_scanned_report("r-fin", "Finance Overview v1.0", "Funding", "Cash"),
    ]
    return {"org": org, "learner": learner, "finance": finance, "scan": scan}


def _counts(org):
    return (
        DeployedReport.query_for_organization(org.id).count(),
        OrganizationModule.query_for_organization(org.id).count(),
        TenantTab.query_for_organization(org.id).count(),
    )


# ── Reconciliation ───────────────────────────────────────────────────────────


def test_scan_ensures_reports_modules_and_tabs(catalog):
    org = catalog["org"]
    result = hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"], actor="ops@example.com")

    assert [(d["module"], d["tab"]) for d in result.deployed] == [
        ("finance", "Funding"),
        ("learners", "Progress"),
        ("learners", "Attendance"),
    ]
    assert result.failed == []
    # Two tabs share the learner report, so only two reports exist.
    assert _counts(org) == (2, 2, 3)

    tab = TenantTab.query.filter_by(tab_name="Attendance").one()
    assert tab.page_display_name == "attendance"
    assert tab.deployed_report.powerbi_report_id == "r-learner"
    assert tab.deployed_report.deployment_status == "active"


def test_second_run_creates_nothing(catalog):
    org = catalog["org"]
    first = hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"])
    before = _counts(org)

    second = hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"])

    assert _counts(org) == before
    assert second.deployed == []
    assert len(second.already_deployed) == len(first.deployed) + len(first.already_deployed)
    assert second.summary()["matched"] == first.summary()["matched"]


def test_failure_in_one_tab_does_not_abort_the_others(catalog):
    org = catalog["org"]
    original = hierarchy_reconciler.ensure_organization_module

    def _flaky(org_, module_name, **kwargs):
        if module_name == "finance":
            raise RuntimeError("module store unavailable")
        return original(org_, module_name, **kwargs)

    with patch.object(hierarchy_reconciler, "ensure_organization_module", side_effect=_flaky):
        result = hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"])

    assert [(f["module"], f["tab"], f["error"]) for f in result.failed] == [
        ("finance", "Funding", "module store unavailable"),
    ]
    assert len(result.deployed) == 2
    failed_logs = DeploymentLogEntry.query.filter_by(organization_id=org.id, status="failed").all()
    assert [entry.action for entry in failed_logs] == ["link"]
    # Nothing the failed tab wrote survives: no orphan report, no success log for it.
    assert _counts(org) == (1, 1, 2)
    assert DeployedReport.query.filter_by(powerbi_report_id="r-fin").count() == 0
    assert DeploymentLogEntry.query.filter_by(powerbi_report_id="r-fin", status="success").count() == 0

    # The next run converges.
    rerun = hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"])
    assert [(d["module"], d["tab"]) for d in rerun.deployed] == [("finance", "Funding")]
    assert _counts(org) == (2, 2, 3)


def test_uniqueness_violation_means_already_ensured(make_organization):
    org = make_organization()
    existing = OrganizationModule(organization_id=org.id, name="learners")
    db.session.add(existing)
    db.session.flush()

    # The first lookup misses as if another request inserted the row in between.
    lookups = iter([None, existing])
    row, created = hierarchy_reconciler._get_or_create(
        lambda: next(lookups),
        lambda: OrganizationModule(organization_id=org.id, name="learners"),
        "OrganizationModule",
    )

    assert row is existing
    assert created is False
    assert OrganizationModule.query_for_organization(org.id).count() == 1


def test_missing_global_module_is_reported_as_failure(make_organization, make_template,
                                                      make_global_tab, make_scanned_report):
    org = make_organization(workspace_id="ws-1")
    template = make_template("Orphan Report v1.0")
    make_global_tab("ghost", "Tab", template, with_module=False)

    result = hierarchy_reconciler.reconcile_workspace_scan(
        org, [make_scanned_report("r-1", "Orphan Report v1.0", "Tab")],
    )
    assert len(result.failed) == 1
    assert "Could not find or create organization module" in result.failed[0]["error"]
    assert TenantTab.query_for_organization(org.id).count() == 0


def test_pending_placeholder_is_linked_not_duplicated(catalog):
    org = catalog["org"]
    placeholder = DeployedReport(
        organization_id=org.id,
        report_template_id=catalog["learner"].id,
        powerbi_workspace_id="ws-1",
        deployment_status="pending",
    )
    db.session.add(placeholder)
    db.session.flush()

    hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"])

    rows = DeployedReport.query.filter_by(report_template_id=catalog["learner"].id).all()
    assert [r.id for r in rows] == [placeholder.id]
    assert placeholder.deployment_status == "active"
    assert placeholder.powerbi_report_id == "r-learner"
    assert DeploymentLogEntry.query.filter_by(action="activate", deployed_report_id=placeholder.id).count() == 1


def test_archived_report_is_not_resurrected(catalog):
    org = catalog["org"]
    archived = DeployedReport(
        organization_id=org.id,
        report_template_id=catalog["finance"].id,
        powerbi_report_id="r-fin",
        deployment_status="archived",
    )
    archived.deactivate()
    db.session.add(archived)
    db.session.flush()

    result = hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"])

    assert [f["tab"] for f in result.failed] == ["Funding"]
    assert archived.deployment_status == "archived"
    assert not archived.is_active


# ── Diagnostics ──────────────────────────────────────────────────────────────


def test_unmatched_diagnostics(catalog, make_template, make_global_tab, make_scanned_report):
    org = catalog["org"]
    missing = make_template("Never Published v1.0")
    make_global_tab("learners", "Ghost", missing)
    make_global_tab("finance", "Forecast", catalog["finance"])
    scan = catalog["scan"] + [make_scanned_report("r-extra", "Ad-hoc Export", "Sheet1")]

    result = hierarchy_reconciler.reconcile_workspace_scan(org, scan)
    by_type = {}
    for item in result.unmatched:
        by_type.setdefault(item["type"], []).append(item)

    assert by_type["report_not_found"][0]["report_name"] == "Never Published v1.0"
    page_miss = by_type["page_not_found"][0]
    assert page_miss["tab"] == "Forecast"
    assert page_miss["available_pages"] == ["Funding", "Cash"]
    assert [u["report_id"] for u in by_type["report_not_mapped"]] == ["r-extra"]
    assert result.summary()["unmatched"] == 3


def test_duplicate_report_names_first_wins(catalog, make_scanned_report):
    org = catalog["org"]
    scan = catalog["scan"] + [make_scanned_report("r-fin-copy", "finance overview v1.0", "Funding")]

    result = hierarchy_reconciler.reconcile_workspace_scan(org, scan)

    duplicate = [u for u in result.unmatched if u["type"] == "duplicate_name"]
    assert duplicate == [{
        "type": "duplicate_name",
        "report_id": "r-fin-copy",
        "report_name": "finance overview v1.0",
        "kept_report_id": "r-fin",
    }]
    assert DeployedReport.query.filter_by(powerbi_report_id="r-fin-copy").count() == 0


def test_names_match_case_insensitively_but_exactly(catalog, make_scanned_report):
    org = catalog["org"]
    scan = [
        catalog["scan"][0],
        make_scanned_report("r-fin", " finance overview v1.0 ", "Funding"),
    ]

    result = hierarchy_reconciler.reconcile_workspace_scan(org, scan)

    assert [d["tab"] for d in result.deployed] == ["Progress", "Attendance"]
    missing = [u["report_name"] for u in result.unmatched if u["type"] == "report_not_found"]
    assert missing == ["Finance Overview v1.0"]
    assert DeployedReport.query.filter_by(powerbi_report_id="r-fin").count() == 0


# ── Priority reports ─────────────────────────────────────────────────────────


def test_priority_reports_are_deployed_once(catalog, make_template, make_scanned_report):
    org = catalog["org"]
    make_template("APTEM - Immediate Priorities v1.5")
    scan = catalog["scan"] + [
        make_scanned_report("r-prio", "APTEM - Immediate Priorities v1.5", "Today"),
        make_scanned_report("r-prio-x", "BUD - Immediate Priorities v9.9"),
    ]

    first = hierarchy_reconciler.reconcile_workspace_scan(org, scan)
    assert [p["report_id"] for p in first.priority_deployed] == ["r-prio"]
    assert first.priority_failed == [{
        "report_name": "BUD - Immediate Priorities v9.9",
        "report_id": "r-prio-x",
        "error": "Template report not found in catalog",
    }]

    second = hierarchy_reconciler.reconcile_workspace_scan(org, scan)
    assert second.priority_deployed == []
    assert [p["report_id"] for p in second.priority_already_deployed] == ["r-prio"]


# ── Orchestration ────────────────────────────────────────────────────────────


def test_scan_organization_workspace_commits_and_logs(catalog, stub_connector):
    org = catalog["org"]
    connector = stub_connector(catalog["scan"])

    payload = hierarchy_reconciler.scan_organization_workspace(org.id, actor="ops", connector=connector)

    assert connector.calls == ["ws-1"]
    assert payload["summary"]["deployed"] == 3
    assert payload["organization_name"] == org.name
    scan_entry = DeploymentLogEntry.query.filter_by(action="scan").one()
    assert scan_entry.status == "success"
    assert scan_entry.triggered_by_user == "ops"
    assert scan_entry.details["deployed"] == 3


def test_scan_requires_workspace(make_organization, stub_connector):
    org = make_organization(workspace_id=None)
    connector = stub_connector()
    with pytest.raises(ConfigurationError):
        hierarchy_reconciler.scan_organization_workspace(org.id, connector=connector)
    assert connector.calls == []


def test_scan_without_credentials_is_a_configuration_error(catalog):
    with pytest.raises(ConfigurationError):
        hierarchy_reconciler.scan_organization_workspace(catalog["org"].id)


def test_connector_failure_is_logged_and_raised(catalog, stub_connector):
    org = catalog["org"]
    connector = stub_connector(error=ExternalServiceError("powerbi", "HTTP 503"))

    with pytest.raises(ExternalServiceError):
        hierarchy_reconciler.scan_organization_workspace(org.id, connector=connector)

    entry = DeploymentLogEntry.query.filter_by(action="scan").one()
    assert entry.status == "failed"
    assert "HTTP 503" in entry.error_message
    assert TenantTab.query_for_organization(org.id).count() == 0


def test_scan_unknown_organization():
    with pytest.raises(NotFoundError):
        hierarchy_reconciler.scan_organization_workspace(4242)


# ── Single-tab operations ────────────────────────────────────────────────────


def test_deploy_tab_creates_then_repoints(make_organization):
    org = make_organization(workspace_id="ws-1")

    first = hierarchy_reconciler.deploy_tab(
        org.id, module_name="custom", tab_name="KPIs",
        powerbi_report_id="r-kpi", page_name="Page 1", actor="ops",
    )
    assert first["created"] is True
    assert first["tab"]["page_name"] == "Page 1"

    second = hierarchy_reconciler.deploy_tab(
        org.id, module_name="custom", tab_name="KPIs",
        powerbi_report_id="r-kpi", page_name="Page 2", sort_order=5,
    )
    assert second["created"] is False
    assert second["tab"]["page_name"] == "Page 2"
    assert second["tab"]["sort_order"] == 5
    assert _counts(org) == (1, 1, 1)


def test_deploy_tab_unknown_template(make_organization):
    org = make_organization()
    with pytest.raises(NotFoundError):
        hierarchy_reconciler.deploy_tab(
            org.id, module_name="m", tab_name="t", powerbi_report_id="r", page_name="p", template_id=999,
        )


def test_hide_tab_creates_hidden_override(make_organization):
    org = make_organization()
    result = hierarchy_reconciler.hide_tab(org.id, module_name="learners", tab_name="Progress")

    tab = result["tab"]
    assert result["created"] is True
    assert tab["override_mode"] == "hidden"
    assert tab["is_active"] is False
    assert tab["sort_order"] == 999


def test_hide_tab_flips_existing_tab(catalog):
    org = catalog["org"]
    hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"])

    result = hierarchy_reconciler.hide_tab(org.id, module_name="finance", tab_name="Funding")

    assert result["created"] is False
    assert result["tab"]["override_mode"] == "hidden"
    assert TenantTab.query_for_organization(org.id).count() == 3


def test_remove_tab_deactivates_and_logs(catalog):
    org = catalog["org"]
    hierarchy_reconciler.reconcile_workspace_scan(org, catalog["scan"])
    tab = TenantTab.query.filter_by(tab_name="Funding").one()

    removed = hierarchy_reconciler.remove_tab(org.id, tab.id, actor="ops")

    assert removed["is_active"] is False
    assert TenantTab.query_deleted().count() == 1
    assert DeploymentLogEntry.query.filter_by(action="delete").count() == 1


def test_remove_tab_of_another_organization_is_not_found(catalog, make_organization):
    hierarchy_reconciler.reconcile_workspace_scan(catalog["org"], catalog["scan"])
    other = make_organization()
    tab = TenantTab.query.first()
    with pytest.raises(NotFoundError):
        hierarchy_reconciler.remove_tab(other.id, tab.id)
