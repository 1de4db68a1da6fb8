"""
Operational report delivery is best-effort.
"""
from datetime import datetime, timezone

import httpx

from billsync.features.billing.notifier import ReportNotifier, build_payload
from billsync.features.billing.stats import ReconcileReport

STARTED = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _report(success=True, error=None) -> ReconcileReport:
    report = ReconcileReport(run_id="run_1", trigger="scheduled", started_at=STARTED)
    report.success = success
    report.error = error
    report.finished_at = STARTED
    report.local.total = 3
    report.provider.created = 2
    return report


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("POST", "https://hooks.example.com/x")
            raise httpx.HTTPStatusError("boom", request=request, response=httpx.Response(self.status_code, request=request))


class FakeClient:
    posted = []
    status_code = 200
    exc = None

    def __init__(self, timeout=None):
        self.timeout = timeout

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def post(self, url, json=None):
        if FakeClient.exc is not None:
            raise FakeClient.exc
        FakeClient.posted.append((url, json))
        return FakeResponse(FakeClient.status_code)


def _install(monkeypatch, status_code=200, exc=None):
    FakeClient.posted = []
    FakeClient.status_code = status_code
    FakeClient.exc = exc
    monkeypatch.setattr("billsync.features.billing.notifier.httpx.Client", FakeClient)


def test_payload_for_success():
    payload = build_payload(_report())
    assert payload["event"] == "billing.reconcile.completed"
    assert payload["report"]["status"] == "success"
    assert payload["report"]["provider"]["created"] == 2
    assert "3 checked" in payload["content"]


def test_payload_for_incomplete_provider_scan():
    report = _report()
    report.provider.page_errors = 1
    report.provider.scan_complete = False
    payload = build_payload(report)
    assert payload["event"] == "billing.reconcile.completed"
    assert payload["report"]["status"] == "partial"
    assert "incomplete (1 provider page errors, no provider writes)" in payload["content"]


def test_payload_for_failure():
    payload = build_payload(_report(success=False, error="ConfigurationError: missing key"))
    assert payload["event"] == "billing.reconcile.failed"
    assert payload["level"] == "error"
    assert "missing key" in payload["content"]


def test_send_posts_payload(monkeypatch):
    _install(monkeypatch)
    assert ReportNotifier("https://hooks.example.com/x").send(_report()) is True
    url, body = FakeClient.posted[0]
    assert url == "https://hooks.example.com/x"
    assert body["report"]["run_id"] == "run_1"


def test_no_webhook_configured(monkeypatch):
    _install(monkeypatch)
    assert ReportNotifier(None).send(_report()) is False
    assert FakeClient.posted == []


def test_http_error_is_swallowed(monkeypatch):
    _install(monkeypatch, status_code=500)
    assert ReportNotifier("https://hooks.example.com/x").send(_report()) is False


def test_network_error_is_swallowed(monkeypatch):
    _install(monkeypatch, exc=httpx.ConnectError("unreachable"))
    assert ReportNotifier("https://hooks.example.com/x").send(_report()) is False
