import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import io
import json
import re

import pytest
import pytest_asyncio

from scenario_reports import ConsoleReporter
from scenario_runner import RunConfig, Scenario, ScenarioRunner
from tests.e2e.mock_server import create_mock_server, shutdown_mock_server


@pytest_asyncio.fixture
async def mock_server():
    runner, base_url, requests = await create_mock_server()
    yield {'base_url': base_url, 'requests': requests}
    await shutdown_mock_server(runner)


def make_runner(base_url: str, report_dir, **overrides) -> ScenarioRunner:
    cfg = RunConfig(base_url=base_url, report_dir=str(report_dir), **overrides)
    return ScenarioRunner(cfg, reporter=ConsoleReporter(io.StringIO()))


@pytest.mark.asyncio
async def test_user_flow_propagates_ids_headers_and_tokens(mock_server, tmp_path):
    scenario = Scenario.model_validate([
        {
            "id": "create",
            "title": "Create Alice",
            "method": "POST",
            "url": "/users",
            "body": {"name": "Alice"},
            "save": {"id": "json.data.id", "token": "data.token", "location": "header.Location"},
            "expect": {"status": 201, "body": {"data.name": "Alice", "exists": ["data.id"]}},
        },
        {
            "id": "fetch",
            "title": "Fetch Alice",
            "method": "GET",
            "url": "/users/{{id}}",
            "headers": {"Authorization": "Bearer {{token}}", "X-From": "{{location}}"},
            "expect": {"status": 200, "body": {"data.name": "/^A/", "notExists": ["data.token"]}},
        },
        {
            "id": "missing",
            "method": "GET",
            "url": "/users/999",
            "expect": {"status": [404, 410], "body": {"error": "not found"}},
        },
    ])
    runner = make_runner(mock_server['base_url'], tmp_path)
    result = await runner.run(scenario)

    assert [row.test_id for row in result.rows] == ["create", "fetch", "missing"]
    assert [row.http_status for row in result.rows] == [201, 200, 404]
    assert all(row.passed for row in result.rows), [row.notes for row in result.rows]

    fetch_request = mock_server['requests'][1]
    assert fetch_request['path'] == "/users/1"
    assert fetch_request['headers']['Authorization'] == "Bearer tok-1"
    assert fetch_request['headers']['X-From'] == "/users/1"

    with open(result.rows[1].evidence, encoding="utf-8") as f:
        evidence = json.load(f)
    assert evidence["request"]["url"] == f"{mock_server['base_url']}/users/1"
    assert evidence["response"]["body"] == {"data": {"id": 1, "name": "Alice"}}

    assert os.path.exists(os.path.join(tmp_path, "summary.csv"))


@pytest.mark.asyncio
async def test_fuzzed_step_sends_baseline_then_mutations(mock_server, tmp_path):
    scenario = Scenario.model_validate([
        {
            "id": "echo",
            "method": "POST",
            "url": "/echo",
            "body": {"name": "user-FZZ", "nested": {"note": "FZZ"}, "n": 1},
            "fuzz": True,
            "expect": {"status": 200, "body": {"received.n": 1}},
        },
    ])
    runner = make_runner(mock_server['base_url'], tmp_path, fuzz_count=2)
    result = await runner.run(scenario)

    assert [row.test_id for row in result.rows] == ["echo", "echo_f1", "echo_f2"]
    assert all(row.passed for row in result.rows)

    names = [req['body']['name'] for req in mock_server['requests']]
    assert names[0] == "user-FZZ"
    assert all(re.fullmatch(r"user-[a-z0-9]{8}", name) for name in names[1:])
    assert names[1] != names[2]
    assert sorted(os.listdir(tmp_path)) == ["echo.json", "echo_f1.json", "echo_f2.json", "summary.csv"]


@pytest.mark.asyncio
async def test_text_response_and_setup_only_step(mock_server, tmp_path):
    scenario = Scenario.model_validate([
        {"id": "text", "method": "GET", "url": "/text", "expect": {"body": {"exists": ["anything"]}}},
        {"id": "setup", "method": "POST", "url": "/users", "body": {"name": "Bob"}, "save": {"id": "json.data.id"}},
    ])
    runner = make_runner(mock_server['base_url'], tmp_path)
    result = await runner.run(scenario)

    assert result.rows[0].passed is False
    assert result.rows[0].notes == "exists:anything✗"
    with open(result.rows[0].evidence, encoding="utf-8") as f:
        assert json.load(f)["response"]["body"] == "hello"

    assert result.rows[1].passed is False
    assert result.rows[1].notes == "no assertions"


@pytest.mark.asyncio
async def test_unreachable_target_fails_every_step_but_runs_them_all(tmp_path):
    scenario = Scenario.model_validate([
        {"id": "a", "method": "GET", "url": "/a", "save": {"x": "json.x"}, "expect": {"status": 200}},
        {"id": "b", "method": "GET", "url": "/b/{{x}}", "expect": {"status": 200}},
    ])
    runner = make_runner("http://127.0.0.1:1", tmp_path, request_timeout_s=5)
    result = await runner.run(scenario)

    assert [(row.test_id, row.passed, row.http_status) for row in result.rows] == [("a", False, None), ("b", False, None)]
    assert result.rows[0].notes
    with open(result.rows[1].evidence, encoding="utf-8") as f:
        evidence = json.load(f)
    assert evidence["request"]["url"] == "http://127.0.0.1:1/b/"
    assert evidence["error"]["type"]


@pytest.mark.asyncio
async def test_unknown_response_charset_is_decoded_as_utf8(mock_server, tmp_path):
    scenario = Scenario.model_validate([
        {"id": "odd", "method": "GET", "url": "/bogus-charset", "expect": {"status": 200, "body": {"ok": True}}},
        {"id": "after", "method": "GET", "url": "/text", "expect": {"status": 200}},
    ])
    runner = make_runner(mock_server['base_url'], tmp_path)
    result = await runner.run(scenario)

    assert [(row.test_id, row.passed, row.http_status) for row in result.rows] == [("odd", True, 200), ("after", True, 200)]
    with open(result.rows[0].evidence, encoding="utf-8") as f:
        assert json.load(f)["response"]["body"] == {"ok": True}
    assert os.path.exists(os.path.join(tmp_path, "summary.csv"))


@pytest.mark.asyncio
async def test_header_with_newline_fails_only_its_step(mock_server, tmp_path):
    scenario = Scenario.model_validate([
        {"id": "a", "method": "POST", "url": "/echo", "body": {"v": "a\r\nX-Evil: 1"}, "save": {"v": "json.received.v"},
         "expect": {"status": 200}},
        {"id": "b", "method": "GET", "url": "/text", "headers": {"X-Val": "{{v}}"}, "expect": {"status": 200}},
        {"id": "c", "method": "GET", "url": "/text", "expect": {"status": 200}},
    ])
    runner = make_runner(mock_server['base_url'], tmp_path)
    result = await runner.run(scenario)

    assert [(row.test_id, row.passed, row.http_status) for row in result.rows] == [
        ("a", True, 200), ("b", False, None), ("c", True, 200),
    ]
    assert result.rows[1].notes
    assert [req['path'] for req in mock_server['requests']] == ["/echo", "/text"]
    assert "X-Evil" not in mock_server['requests'][1]['headers']

    with open(result.rows[1].evidence, encoding="utf-8") as f:
        evidence = json.load(f)
    assert evidence["response"] is None
    assert evidence["error"]["message"]
    assert os.path.exists(os.path.join(tmp_path, "summary.csv"))


@pytest.mark.asyncio
async def test_get_body_is_sent_as_recorded(mock_server, tmp_path):
    scenario = Scenario.model_validate([
        {"id": "search", "method": "GET", "url": "/inspect", "body": {"q": "v"}, "expect": {"status": 200}},
    ])
    runner = make_runner(mock_server['base_url'], tmp_path)
    result = await runner.run(scenario)

    assert result.rows[0].passed is True
    assert json.loads(mock_server['requests'][0]['body']) == {"q": "v"}
    with open(result.rows[0].evidence, encoding="utf-8") as f:
        assert json.load(f)["request"]["body"] == {"q": "v"}
