import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import io
from typing import Any, Callable, Dict, List

import pytest

from scenario_reports import ConsoleReporter
from scenario_runner import HttpResponse, RunConfig, ScenarioRunner


class FakeTransport:
    """Stands in for HttpTransport; `responder` returns an HttpResponse or an exception to raise."""

    def __init__(self, responder: Callable[[str, str, Dict[str, Any], Any], Any]):
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    async def send(self, method: str, url: str, headers: Dict[str, Any], body: Any) -> HttpResponse:
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body})
        result = self.responder(method, url, headers, body)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def run_config(tmp_path) -> RunConfig:
    return RunConfig(base_url="http://example.com/", report_dir=str(tmp_path / "reports"))


@pytest.fixture
def console() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def make_runner(console):
    def _make(config: RunConfig, responder, **kwargs) -> ScenarioRunner:
        transport = FakeTransport(responder)
        return ScenarioRunner(config, transport=transport, reporter=ConsoleReporter(console), **kwargs)
    return _make
