"""
Tests for reliability — retry with backoff and error classification.
"""

import pytest

from src.core.errors import (
    KIND_CODES,
    DeploymentError,
    InfraErrorKind,
    InfrastructureError,
    OrchestratorError,
    ValidationError,
    classify_infrastructure_error,
    remediation,
)
from src.core.reliability.retry import RetryPolicy, is_transient, retry_operation


def _flaky(errors: list[Exception], result: str = "ok"):
    """Callable that raises each error once, then returns ``result``."""
    calls = {"n": 0}

    def op():
        calls["n"] += 1
        if errors:
            raise errors.pop(0)
        return result

    return op, calls


def _transient() -> InfrastructureError:
    return InfrastructureError("slow", kind=InfraErrorKind.TIMEOUT)


# ── Retry ───────────────────────────────────────────────────────


class TestRetryPolicy:
    def test_exponential_and_capped(self):
        policy = RetryPolicy(max_retries=5, initial_delay=1.0, max_delay=4.0, jitter=0.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 4.0]

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=2.0, jitter=0.5)
        for _ in range(20):
            assert 2.0 <= policy.delay_for(1) <= 3.0

    def test_fixed(self):
        policy = RetryPolicy.fixed(3, 0.5)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 0.5, 0.5]


class TestRetryOperation:
    def test_success_first_try(self):
        op, calls = _flaky([])
        assert retry_operation(op, sleep=lambda s: None) == "ok"
        assert calls["n"] == 1

    def test_transient_retried(self):
        op, calls = _flaky([_transient(), _transient()])
        slept: list[float] = []
        seen: list[int] = []
        result = retry_operation(
            op,
            policy=RetryPolicy.fixed(3, 0.25),
            sleep=slept.append,
            on_retry=lambda attempt, e, delay: seen.append(attempt),
        )
        assert result == "ok"
        assert calls["n"] == 3
        assert slept == [0.25, 0.25]
        assert seen == [1, 2]

    def test_gives_up_after_max_retries(self):
        op, calls = _flaky([_transient() for _ in range(5)])
        with pytest.raises(InfrastructureError):
            retry_operation(op, policy=RetryPolicy.fixed(2, 0), sleep=lambda s: None)
        assert calls["n"] == 3

    def test_permanent_error_not_retried(self):
        op, calls = _flaky([InfrastructureError("denied", kind=InfraErrorKind.PERMISSION)])
        with pytest.raises(InfrastructureError):
            retry_operation(op, sleep=lambda s: None)
        assert calls["n"] == 1

    def test_custom_predicate(self):
        op, calls = _flaky([KeyError("x")])
        assert retry_operation(
            op, should_retry=lambda e: isinstance(e, KeyError), policy=RetryPolicy.fixed(1, 0),
            sleep=lambda s: None,
        ) == "ok"
        assert calls["n"] == 2

    def test_is_transient(self):
        assert is_transient(_transient())
        assert not is_transient(ValueError("x"))
        assert not is_transient(ValidationError("bad"))


# ── Classification ──────────────────────────────────────────────


class TestClassification:
    @pytest.mark.parametrize("output,kind", [
        ("Cannot connect to the Docker daemon at unix:///var/run/docker.sock", "connection"),
        ("permission denied while trying to connect", "permission"),
        ("Bind for 0.0.0.0:16110 failed: port is already allocated", "port_conflict"),
        ("write /var/lib/docker: no space left on device", "disk_space"),
        ("pull access denied for kaspanet/nope", "image_not_found"),
        ("net/http: TLS handshake timeout", "timeout"),
        ("read tcp: connection reset by peer", "connection_reset"),
        ("toomanyrequests: You have reached your pull rate limit", "rate_limit"),
        ("dial tcp: lookup registry-1.docker.io on 127.0.0.53:53: no such host", "dns_failure"),
        ("something odd happened", "unknown"),
    ])
    def test_kinds(self, output, kind):
        assert classify_infrastructure_error(output)["kind"] == kind

    def test_first_match_wins(self):
        # Mentions both a daemon connection failure and a timeout
        info = classify_infrastructure_error("Cannot connect to the Docker daemon: i/o timeout")
        assert info["kind"] == "connection"

    def test_port_extracted(self):
        info = classify_infrastructure_error("Bind for 0.0.0.0:16111 failed: port is already allocated")
        assert info["port"] == 16111
        assert info["message"] == "Port 16111 is already in use"

    def test_unknown_uses_first_line(self):
        info = classify_infrastructure_error("first line\nsecond line")
        assert info["message"] == "first line"
        assert not info["transient"]

    def test_empty_output(self):
        assert classify_infrastructure_error("")["message"] == "Unknown Docker error"


class TestErrors:
    def test_from_output(self):
        err = InfrastructureError.from_output("port is already allocated 0.0.0.0:5555", stage="start")
        assert err.kind == InfraErrorKind.PORT_CONFLICT
        assert err.code == "PORT_CONFLICT"
        assert err.details["port"] == 5555
        assert err.stage == "start"
        assert not err.transient

    def test_transient_from_output(self):
        assert InfrastructureError.from_output("connection reset by peer").transient

    def test_deployment_error_details(self):
        err = DeploymentError("not running", failed_services=["kaspa-node"])
        assert err.to_dict()["details"]["failed_services"] == ["kaspa-node"]
        assert err.to_dict()["remediation"]["title"] == "Services did not start"

    def test_remediation_fallback(self):
        entry = remediation("NO_SUCH_CODE")
        assert entry["code"] == "NO_SUCH_CODE"
        assert entry["steps"]

    def test_every_error_code_has_remediation(self):
        for cls in (OrchestratorError, ValidationError, InfrastructureError, DeploymentError):
            assert remediation(cls.code)["title"] != ""

    def test_every_infrastructure_kind_has_remediation(self):
        for kind in InfraErrorKind:
            code = KIND_CODES[kind]
            assert InfrastructureError("x", kind=kind).code == code
            generic = code == "INSTALLATION_FAILED"
            assert generic or remediation(code)["title"] != remediation("INSTALLATION_FAILED")["title"]

    def test_suggestion_leads_remediation(self):
        err = InfrastructureError("image gone", kind=InfraErrorKind.IMAGE_NOT_FOUND, suggestion="Check the tag")
        data = err.to_dict()
        assert data["code"] == "IMAGE_NOT_FOUND"
        assert data["kind"] == "image_not_found"
        assert data["remediation"]["steps"][0] == "Check the tag"
