from __future__ import annotations

import json

import allure
import httpx

from report_fanout.orchestrator.notifications import OperatorAlert, OperatorNotifier

pytestmark = [
    allure.epic("Fan-out Orchestration"),
    allure.feature("Operator Alerts"),
]

ALERT = OperatorAlert(token="tok", subject="Worker did not shut down", details={"cause": "x"})


def test_alert_is_posted_to_webhook() -> None:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    notifier = OperatorNotifier(
        webhook_url="https://hooks.example.com/alerts",
        transport=httpx.MockTransport(_handler),
    )

    assert notifier.notify(ALERT)
    assert len(requests) == 1
    payload = json.loads(requests[0].content)
    assert payload["token"] == "tok"
    assert payload["details"] == {"cause": "x"}
    assert "Worker did not shut down" in payload["text"]


def test_rejected_or_failed_post_returns_false() -> None:
    rejected = OperatorNotifier(
        webhook_url="https://hooks.example.com/alerts",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )

    def _timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    timing_out = OperatorNotifier(
        webhook_url="https://hooks.example.com/alerts",
        transport=httpx.MockTransport(_timeout),
    )

    assert not rejected.notify(ALERT)
    assert not timing_out.notify(ALERT)


def test_without_webhook_alert_is_only_logged(caplog) -> None:
    notifier = OperatorNotifier()

    with caplog.at_level("WARNING"):
        assert not notifier.notify(ALERT)

    assert "Operator attention needed for tok" in caplog.text
