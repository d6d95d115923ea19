"""
Post-apply health checks.

A check is either a TCP connect to ``address`` (``host:port``) or an
HTTP GET of ``url`` expecting a 2xx/3xx answer. Both fields may
reference Terraform outputs as ``{{.output_name}}``.
"""

from __future__ import annotations

import logging
import re
import socket
import urllib.error
import urllib.request
from collections.abc import Callable
from typing import Any

from tfcontrol.core.errors import HealthCheckError
from tfcontrol.core.models.resource import HealthCheck

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{\s*\.([A-Za-z0-9_]+)\s*\}\}")


def render(template: str, outputs: dict[str, Any]) -> str:
    """Substitute ``{{.name}}`` references with output values.

    Raises:
        HealthCheckError: a referenced output does not exist.
    """

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name not in outputs:
            raise HealthCheckError(f"output '{name}' referenced by health check not found")
        return str(outputs[name])

    return _TEMPLATE_RE.sub(_sub, template)


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise HealthCheckError(f"invalid address '{address}', expected host:port")
    return host.strip("[]"), int(port)


class HealthChecker:
    """Runs health checks; connection functions are injectable for tests."""

    def __init__(
        self,
        connect: Callable[..., Any] = socket.create_connection,
        opener: Callable[..., Any] = urllib.request.urlopen,
    ):
        self._connect = connect
        self._opener = opener

    def check(self, check: HealthCheck, outputs: dict[str, Any]) -> None:
        timeout = check.timeout.total_seconds()
        if check.type == "tcp":
            self._check_tcp(check.name, render(check.address, outputs), timeout)
        else:
            self._check_http(check.name, render(check.url, outputs), timeout)

    def check_all(self, checks: list[HealthCheck], outputs: dict[str, Any]) -> None:
        """Run every check in order; the first failure raises."""
        for check in checks:
            self.check(check, outputs)
            logger.debug("Health check '%s' passed", check.name)

    def _check_tcp(self, name: str, address: str, timeout: float) -> None:
        host, port = _split_address(address)
        try:
            conn = self._connect((host, port), timeout=timeout)
        except OSError as e:
            raise HealthCheckError(f"health check '{name}' failed: tcp {address}: {e}") from e
        conn.close()

    def _check_http(self, name: str, url: str, timeout: float) -> None:
        try:
            with self._opener(url, timeout=timeout) as response:
                status = getattr(response, "status", 200)
        except urllib.error.HTTPError as e:
            raise HealthCheckError(f"health check '{name}' failed: {url} returned {e.code}") from e
        except (urllib.error.URLError, OSError) as e:
            raise HealthCheckError(f"health check '{name}' failed: {url}: {e}") from e
        if not 200 <= status < 400:
            raise HealthCheckError(f"health check '{name}' failed: {url} returned {status}")
