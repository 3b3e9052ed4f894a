"""Result interpreter - classifies raw probe results as success or error.

Pure and synchronous. Rules per monitor type:
- HTTP: success when the status code is in 200..http_success_max_status.
  When response validation is configured its verdict replaces the status
  rule, so a 200 whose body misses the expected text is an error and a
  503 matching statusEquals 503 is a success.
- TCP: success when the connection was established.
- Ping: success when packet loss is at or below the allowed percentage.
"""
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from ..schemas.monitor import CheckStatus, MonitorSpec, ValidationRule
from .probes import ProbeResult


@dataclass(frozen=True)
class Verdict:
    """Classified outcome with a human-readable message."""
    status: CheckStatus
    message: str

    @property
    def ok(self) -> bool:
        return self.status == CheckStatus.SUCCESS


def failure_message(monitor_type: str, result: ProbeResult) -> str:
    kind = result.error_kind or "error"
    detail = result.details or "Connection failed"
    return f"{monitor_type.upper()} check failed ({kind}): {detail}"


def _format_percent(value: float) -> str:
    return f"{value:.0f}%" if value == int(value) else f"{value:.1f}%"


class ResultInterpreter:
    """Applies monitor-type specific success rules to probe results."""

    def __init__(self, http_success_max_status: int = 399, ping_max_loss_percent: float = 0.0):
        self.http_success_max_status = http_success_max_status
        self.ping_max_loss_percent = ping_max_loss_percent
        self._rules: Dict[str, Callable[[MonitorSpec, ProbeResult], Verdict]] = {
            "http": self._classify_http,
            "tcp": self._classify_tcp,
            "ping": self._classify_ping,
        }

    def classify(self, monitor: MonitorSpec, result: ProbeResult) -> Verdict:
        rule = self._rules.get(monitor.type)
        if rule is None:
            return Verdict(CheckStatus.ERROR, result.details or f"Unknown monitor type: {monitor.type}")
        return rule(monitor, result)

    def _classify_http(self, monitor: MonitorSpec, result: ProbeResult) -> Verdict:
        if not result.succeeded or result.status_code is None:
            return Verdict(CheckStatus.ERROR, failure_message("http", result))

        code = result.status_code
        if monitor.has_validation:
            passed, message = self.validate(monitor, result)
            if passed:
                return Verdict(CheckStatus.SUCCESS, f"HTTP {code}")
            return Verdict(CheckStatus.ERROR, message)

        if 200 <= code <= self.http_success_max_status:
            return Verdict(CheckStatus.SUCCESS, f"HTTP {code}")
        return Verdict(CheckStatus.ERROR, f"Error: HTTP {code}")

    def validate(self, monitor: MonitorSpec, result: ProbeResult) -> Tuple[bool, Optional[str]]:
        """Evaluate the monitor's validation rule. Returns (passed, failure message)."""
        rule = monitor.validation_rule
        expected = monitor.validation_value or ""
        body = result.raw_body or ""

        if rule == ValidationRule.CONTAINS:
            passed = expected in body
        elif rule == ValidationRule.NOT_CONTAINS:
            passed = expected not in body
        elif rule == ValidationRule.EQUALS:
            passed = body == expected
        elif rule == ValidationRule.STARTS_WITH:
            passed = body.startswith(expected)
        elif rule == ValidationRule.ENDS_WITH:
            passed = body.endswith(expected)
        elif rule == ValidationRule.REGEX:
            try:
                passed = re.search(expected, body) is not None
            except re.error as e:
                return False, f"Invalid regex: {e}"
        elif rule == ValidationRule.STATUS_EQUALS:
            try:
                passed = result.status_code == int(expected.strip())
            except ValueError:
                return False, f"Invalid expected status: {expected!r}"
        else:
            return False, f"Unsupported validation rule: {rule}"

        if passed:
            return True, None
        return False, f'Response validation failed: {rule.value} "{expected}" (HTTP {result.status_code})'

    def _classify_tcp(self, monitor: MonitorSpec, result: ProbeResult) -> Verdict:
        if result.succeeded:
            return Verdict(CheckStatus.SUCCESS, result.details or "TCP check successful")
        return Verdict(CheckStatus.ERROR, failure_message("tcp", result))

    def _classify_ping(self, monitor: MonitorSpec, result: ProbeResult) -> Verdict:
        loss = result.packet_loss_percent
        if loss is None:
            return Verdict(CheckStatus.ERROR, failure_message("ping", result))

        threshold = monitor.max_packet_loss_percent
        if threshold is None:
            threshold = self.ping_max_loss_percent

        summary = f"{result.packets_received}/{result.packets_sent} packets received"
        if loss <= threshold:
            return Verdict(CheckStatus.SUCCESS, f"PING check successful: {summary} ({_format_percent(loss)} loss)")
        return Verdict(
            CheckStatus.ERROR,
            f"Packet loss {_format_percent(loss)} exceeds {_format_percent(threshold)} threshold ({summary})",
        )
