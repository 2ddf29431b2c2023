# scenario_runner.py

import asyncio
import aiohttp
import copy
import json
import logging
import random
import re
import string
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    ValidationError,
    field_validator,
)
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from scenario_reports import ConsoleReporter, EvidenceSink, SummarySink

# --- Logging Setup ---
logger = logging.getLogger("ScenarioRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False # Prevent duplicate logs if root logger is configured

__all__ = [
    "logger", "MISSING", "ScenarioRunnerError", "ScenarioLoadError", "TransportError",
    "Expectation", "Step", "Scenario", "RunConfig", "HttpResponse", "EvidenceRecord",
    "SummaryRow", "StepOutcome", "AssertionResult", "RunResult", "parse_path",
    "resolve_path", "render_template", "FuzzMutator", "evaluate_expectation",
    "propagate_context", "HttpTransport", "ScenarioRunner", "load_scenario",
]

# ---------------------------
# Errors
# ---------------------------

class ScenarioRunnerError(Exception):
    """Base class for errors raised by the scenario runner."""


class ScenarioLoadError(ScenarioRunnerError):
    """The scenario file could not be read, parsed or validated. Fatal for the run."""


class TransportError(ScenarioRunnerError):
    """Connection-level failure of an HTTP exchange (DNS, refused connection, timeout...)."""


# ---------------------------
# Scenario Pydantic Models
# ---------------------------

class Expectation(BaseModel):
    """
    Declarative assertion block attached to a step.
    `body` maps dot-paths to a literal (deep equality) or a '/regex/' string, plus the
    reserved keys 'exists' and 'notExists' holding lists of dot-paths.
    """
    # Not coerced: "200" or true fails the status check instead of matching 200
    status: Optional[Any] = Field(None, description="Expected HTTP status (int), or list of acceptable statuses")
    body: Optional[Dict[str, Any]] = Field(None, description="Body assertions keyed by dot-path")

    model_config = ConfigDict(extra="ignore")


class Step(BaseModel):
    id: str = Field(..., description="Unique identifier for the step, also the base of its report label")
    title: Optional[str] = Field(None, description="Human-readable description shown in the summary")
    method: str = Field(..., description="HTTP method (GET, POST, PUT, etc.)")
    url: str = Field(..., description="URL path appended to the base URL. Can contain {{variables}}.")
    headers: Optional[Dict[str, Any]] = Field(default_factory=dict, description="Request headers. Can contain {{variables}}.")
    body: Any = Field(None, description="Request body (any JSON value). String leaves can contain {{variables}} and the FZZ fuzz marker.")
    save: Optional[Dict[str, str]] = Field(default_factory=dict, description="Mapping of context variable names to extraction paths (e.g. 'token': 'json.data.token', 'loc': 'header.Location')")
    expect: Optional[Expectation] = Field(None, description="Assertions evaluated against the response")
    fuzz: bool = Field(False, description="Repeat this step with mutated bodies when the run has a fuzz count")

    model_config = ConfigDict(extra="ignore")

    @field_validator('method')
    def validate_method(cls, v):
        allowed_methods = ['GET', 'POST', 'PUT', 'DELETE', 'HEAD', 'PATCH', 'OPTIONS']
        method_upper = v.upper()
        if method_upper not in allowed_methods:
            raise ValueError(f"method must be one of {allowed_methods}, got '{v}'")
        return method_upper


class Scenario(RootModel[List[Step]]):
    """Ordered list of steps, executed top to bottom."""

    def __iter__(self):
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)


# ---------------------------
# Configuration Model
# ---------------------------

def _default_report_dir() -> str:
    return f"reports/{int(time.time() * 1000)}"


class RunConfig(BaseModel):
    """Runtime configuration for one scenario run."""
    base_url: str = Field(..., description="Base URL every step URL is appended to")
    report_dir: str = Field(default_factory=_default_report_dir, description="Directory receiving evidence files and summary.csv")
    fuzz_count: int = Field(default=0, ge=0, description="Extra mutated iterations for steps marked fuzz")
    fuzz_seed: Optional[int] = Field(default=None, description="Seed for the fuzz token generator (random when unset)")
    request_timeout_s: float = Field(default=60.0, gt=0, description="Total timeout for a single HTTP exchange")
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates of the target")
    debug: bool = Field(default=False, description="Enable debug logging")

    @field_validator('base_url')
    def validate_base_url(cls, v):
        stripped = v.strip().rstrip('/')
        parsed = urlparse(stripped)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL, got '{v}'")
        return stripped


# ---------------------------
# Runtime / Report Models
# ---------------------------

class HttpResponse(BaseModel):
    status: int
    body: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)

    def get_header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class EvidenceRecord(BaseModel):
    id: str
    label: str
    started_at: str
    request: Dict[str, Any]
    response: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    elapsed_ms: float


class SummaryRow(BaseModel):
    test_id: str
    title: str
    passed: bool
    http_status: Optional[int] = None
    notes: str = ""
    evidence: str = ""

    def as_csv_row(self) -> List[str]:
        return [
            self.test_id,
            self.title,
            "PASS" if self.passed else "FAIL",
            str(self.http_status) if self.http_status is not None else "-",
            self.notes,
            self.evidence,
        ]


class AssertionResult(BaseModel):
    passed: bool
    notes: str


class StepOutcome(BaseModel):
    passed: bool
    notes: str
    status: Optional[int] = None
    evidence_path: str
    record: EvidenceRecord


class RunResult(BaseModel):
    rows: List[SummaryRow]
    summary_path: str

    @property
    def all_passed(self) -> bool:
        return all(row.passed for row in self.rows)


# ---------------------------
# Path Helper Functions
# ---------------------------

class _Missing:
    """Sentinel type for paths that do not resolve. Distinct from a stored None."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

MISSING = _Missing()

_path_segment_regex = re.compile(r'\[(\d+)\]|\.?([^.\[\]]+)')


def parse_path(path: str) -> List[Union[str, int]]:
    """
    Split a dot-path into segments. Dots separate keys, bracketed numbers are list
    indices: 'data.items[0].id' -> ['data', 'items', 0, 'id']. 'data.items.0.id' is
    also accepted; numeric keys are resolved against lists when the target is a list.
    An empty or unparseable path yields no segments.
    """
    if not isinstance(path, str) or not path:
        return []
    segments: List[Union[str, int]] = []
    for match in _path_segment_regex.finditer(path):
        index_str, part_name = match.group(1), match.group(2)
        if index_str is not None:
            segments.append(int(index_str))
        elif part_name is not None:
            segments.append(part_name)
    return segments


def resolve_path(value: Any, path: str) -> Any:
    """
    Resolve a dot-path against a structured value.
    Returns MISSING when any segment cannot be followed (absent key, index out of
    range, traversal through a scalar or through None). A None stored at the final
    segment is returned as None.
    """
    segments = parse_path(path)
    if not segments:
        return MISSING

    current = value
    for segment in segments:
        if isinstance(current, dict):
            key = str(segment)
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, list):
            if isinstance(segment, int):
                index = segment
            elif segment.isdigit():
                index = int(segment)
            else:
                return MISSING
            if not 0 <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


# ---------------------------
# Template Engine
# ---------------------------

_placeholder_regex = re.compile(r"\{\{(.*?)\}\}")


def _stringify(value: Any) -> str:
    """String form used when a value is spliced into a template or matched by a regex."""
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def _render_string(text: str, context: Dict[str, Any]) -> str:
    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in context:
            logger.warning(f"Variable '{{{{{key}}}}}' not found in context. Substituting with empty string.")
            return ""
        return _stringify(context[key])

    rendered = _placeholder_regex.sub(replace, text)
    if logger.isEnabledFor(logging.DEBUG) and rendered != text:
        logger.debug(f"Substituted: '{text[:100]}' -> '{rendered[:100]}'")
    return rendered


def render_template(value: Any, context: Dict[str, Any]) -> Any:
    """
    Recursively substitute {{key}} placeholders in strings found anywhere in `value`.
    Missing keys and None values render as an empty string. Dict keys, non-string
    scalars and None are returned untouched; lists keep their order and length.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return _render_string(value, context)
    if isinstance(value, list):
        return [render_template(item, context) for item in value]
    if isinstance(value, dict):
        return {key: render_template(item, context) for key, item in value.items()}
    return value


# ---------------------------
# Fuzz Mutator
# ---------------------------

FUZZ_MARKER = "FZZ"
_fuzz_marker_regex = re.compile(re.escape(FUZZ_MARKER))
_fuzz_alphabet = string.ascii_lowercase + string.digits


class FuzzMutator:
    """
    Replaces every FZZ marker inside string leaves of a body with a random token.
    Not cryptographically secure; tokens only need to differ between iterations.
    """

    def __init__(self, seed: Optional[int] = None, token_length: int = 8):
        self._random = random.Random(seed)
        self.token_length = token_length

    def random_token(self) -> str:
        return "".join(self._random.choices(_fuzz_alphabet, k=self.token_length))

    def mutate(self, body: Any) -> Any:
        """Return a mutated deep copy of `body`; the argument is never modified."""
        if isinstance(body, str):
            return _fuzz_marker_regex.sub(lambda _match: self.random_token(), body)
        if isinstance(body, list):
            return [self.mutate(item) for item in body]
        if isinstance(body, dict):
            return {key: self.mutate(item) for key, item in body.items()}
        return copy.deepcopy(body)


# ---------------------------
# Assertion Evaluator
# ---------------------------

PASS_MARK = "✓"
FAIL_MARK = "✗"
_regex_literal = re.compile(r"/.*/")


def _mark(passed: bool) -> str:
    return PASS_MARK if passed else FAIL_MARK


def _canonical(value: Any) -> Any:
    """Integral floats become ints so 1.0 and 1 serialize alike."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _canonical(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_canonical(v) for v in value]
    return value


def _to_json(value: Any) -> str:
    """Canonical compact serialization used for equality checks and notes."""
    if value is MISSING:
        return "undefined"
    return json.dumps(_canonical(value), separators=(",", ":"), ensure_ascii=False, default=str)


def _same_status(expected: Any, actual: int) -> bool:
    return isinstance(expected, int) and not isinstance(expected, bool) and expected == actual


def _match_regex(pattern_literal: str, actual: Any) -> bool:
    pattern = pattern_literal[1:-1]
    if actual is MISSING:
        subject = "undefined"
    elif actual is None:
        subject = "null"
    else:
        subject = _stringify(actual)
    try:
        return re.search(pattern, subject) is not None
    except re.error as e:
        logger.warning(f"Invalid regex '{pattern_literal}' in expectation: {e}")
        return False


def evaluate_expectation(expect: Expectation, status: int, body: Any) -> AssertionResult:
    """
    Evaluate an expectation against a response status and decoded body.

    Every check runs (no short-circuit) and contributes one note; the verdict is the
    AND of all checks. With nothing to check the verdict is a vacuous pass with empty
    notes. Never raises: unresolvable paths and bad patterns fail their own check.
    """
    passed = True
    notes: List[str] = []

    if expect.status is not None:
        if isinstance(expect.status, list):
            ok = any(_same_status(wanted, status) for wanted in expect.status)
        else:
            ok = _same_status(expect.status, status)
        passed = passed and ok
        notes.append(f"status:{status}{_mark(ok)}")

    if expect.body:
        for path, wanted in expect.body.items():
            if path in ("exists", "notExists"):
                continue
            actual = resolve_path(body, path)
            if isinstance(wanted, str) and _regex_literal.fullmatch(wanted):
                ok = _match_regex(wanted, actual)
            else:
                ok = actual is not MISSING and _to_json(actual) == _to_json(wanted)
            passed = passed and ok
            notes.append(f"{path}={_to_json(actual)} {_mark(ok)}")

        exists = expect.body.get("exists")
        if isinstance(exists, list):
            for path in exists:
                ok = resolve_path(body, str(path)) is not MISSING
                passed = passed and ok
                notes.append(f"exists:{path}{_mark(ok)}")

        not_exists = expect.body.get("notExists")
        if isinstance(not_exists, list):
            for path in not_exists:
                ok = resolve_path(body, str(path)) is MISSING
                passed = passed and ok
                notes.append(f"notExists:{path}{_mark(ok)}")

    return AssertionResult(passed=passed, notes="; ".join(notes))


# ---------------------------
# Context Propagator
# ---------------------------

HEADER_PREFIX = "header."
BODY_PREFIX = "json."


def propagate_context(save: Dict[str, str], response: HttpResponse, context: Dict[str, Any]) -> None:
    """
    Copy values from a response into the context according to a step's `save` map.
    'header.<Name>' reads a response header (case-insensitive); anything else is a
    body dot-path with an optional 'json.' prefix. Values that cannot be found are
    stored as None, overwriting whatever the key held before.
    """
    for var_name, path_expr in save.items():
        if path_expr.startswith(HEADER_PREFIX):
            header_name = path_expr[len(HEADER_PREFIX):]
            value = response.get_header(header_name)
            source_description = f"header '{header_name}'"
            found = value is not None
        else:
            body_path = path_expr[len(BODY_PREFIX):] if path_expr.startswith(BODY_PREFIX) else path_expr
            value = resolve_path(response.body, body_path)
            source_description = f"body path '{body_path}'"
            found = value is not MISSING
            if not found:
                value = None

        if found:
            log_val_repr = repr(value)
            logger.debug(f"Saved {source_description} into context variable '{var_name}': {log_val_repr[:100]}{'...' if len(log_val_repr) > 100 else ''}")
        else:
            logger.warning(f"Extraction failed: {source_description} for variable '{var_name}' not found in response. Setting it to empty.")
        context[var_name] = value


# ---------------------------
# HTTP Transport
# ---------------------------

_MASKED_HEADERS = ("authorization", "cookie", "set-cookie")


def _mask_headers(headers: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ('********' if k.lower() in _MASKED_HEADERS and v else v) for k, v in headers.items()}


class HttpTransport:
    """
    Performs one HTTP exchange on an aiohttp session.
    HTTP error statuses are returned like any other response; only connection-level
    failures raise TransportError.
    """

    def __init__(self, session: aiohttp.ClientSession):
        self.session = session

    async def send(self, method: str, url: str, headers: Dict[str, Any], body: Any) -> HttpResponse:
        final_headers = {str(k): _stringify(v) for k, v in (headers or {}).items() if v is not None}
        json_payload, data_payload = self._prepare_body(final_headers, body)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"\n--- REQUEST START ---\n"
                         f"URL: {method} {url}\n"
                         f"Headers: {_mask_headers(final_headers)}\n"
                         f"Payload: {str(json_payload if json_payload is not None else data_payload)[:200]}\n"
                         f"---------------------")

        request_start_time = time.monotonic()
        try:
            async with self.session.request(
                method,
                url,
                headers=final_headers,
                json=json_payload,
                data=data_payload,
            ) as resp:
                response_headers = {k: v for k, v in resp.headers.items()}
                response_body = await self._read_body(resp)
                response_status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as conn_err:
            duration_ms = (time.monotonic() - request_start_time) * 1000
            message = f"{type(conn_err).__name__}: {conn_err}" if str(conn_err) else type(conn_err).__name__
            logger.warning(f"{method} {url} failed after {duration_ms:.2f} ms: {message}")
            raise TransportError(message) from conn_err
        except (ValueError, TypeError) as prep_err:
            # aiohttp rejects the request before sending it (e.g. CR/LF in a header value)
            message = f"Request preparation error: {type(prep_err).__name__}: {prep_err}"
            logger.warning(f"{method} {url} not sent: {message}")
            raise TransportError(message) from prep_err

        duration_ms = (time.monotonic() - request_start_time) * 1000
        log_level = logging.WARNING if response_status >= 400 else logging.INFO
        logger.log(log_level, f"Received: {response_status} {method} {url} ({duration_ms:.2f} ms)")
        if logger.isEnabledFor(logging.DEBUG):
            log_body_repr = repr(response_body)
            logger.debug(f"  Response Headers: {_mask_headers(response_headers)}")
            logger.debug(f"  Response Body ({type(response_body).__name__}): {log_body_repr[:250]}{'...' if len(log_body_repr) > 250 else ''}")
        return HttpResponse(status=response_status, body=response_body, headers=response_headers)

    @staticmethod
    def _prepare_body(headers: Dict[str, str], body: Any):
        """Split a templated body into aiohttp's json= or data= argument."""
        if body is None:
            return None, None
        content_type = next((v for k, v in headers.items() if k.lower() == 'content-type'), '').lower()
        if isinstance(body, (dict, list)):
            return body, None
        if isinstance(body, str):
            if 'application/json' in content_type:
                try:
                    return json.loads(body), None
                except json.JSONDecodeError:
                    logger.warning("Content-Type is JSON, but body is not valid JSON. Sending as raw string data.")
            return None, body.encode('utf-8', errors='replace')
        # Bare JSON scalars (numbers, booleans)
        return body, None

    @staticmethod
    async def _read_body(resp: aiohttp.ClientResponse) -> Any:
        """
        Decode a response body: JSON when it parses (whatever the Content-Type says
        for text payloads), plain text otherwise, a short placeholder for binary data.
        """
        resp_content_type = resp.headers.get('Content-Type', '').lower()
        try:
            raw_bytes = await resp.read()
        except aiohttp.ClientPayloadError as payload_err:
            logger.error(f"Payload error reading response body ({resp.status}): {payload_err}")
            return f"Error reading response body: {payload_err}"

        if not raw_bytes:
            return ""
        is_text = (not resp_content_type or 'json' in resp_content_type
                   or resp_content_type.startswith('text/'))
        if not is_text:
            limit = 100
            if len(raw_bytes) > limit:
                return f"[Body Binary Data - Type: {resp_content_type}, Size: {len(raw_bytes)} bytes, Starts: {raw_bytes[:limit]!r}...]"
            return f"[Body Binary Data - Type: {resp_content_type}, Size: {len(raw_bytes)} bytes, Data: {raw_bytes!r}]"

        # Declared charsets are not trusted; an unknown one would raise LookupError
        text = raw_bytes.decode('utf-8', errors='replace')
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            if 'json' in resp_content_type:
                logger.warning(f"Failed to decode JSON response ({resp.status}) despite Content-Type. Keeping it as text.")
            return text


# ---------------------------
# Scenario Loader
# ---------------------------

def load_scenario(path: Union[str, Path]) -> Scenario:
    """
    Read and validate a scenario file: a JSON array of steps, or the same structure in
    YAML when the file ends in .yaml/.yml. Any failure raises ScenarioLoadError.
    """
    scenario_path = Path(path)
    try:
        text = scenario_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ScenarioLoadError(f"Cannot read scenario file '{scenario_path}': {e}") from e

    try:
        if scenario_path.suffix.lower() in (".yaml", ".yml"):
            data = YAML(typ="safe").load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, YAMLError) as e:
        raise ScenarioLoadError(f"Cannot parse scenario file '{scenario_path}': {e}") from e

    try:
        scenario = Scenario.model_validate(data)
    except ValidationError as e:
        raise ScenarioLoadError(f"Invalid scenario in '{scenario_path}': {e}") from e

    logger.info(f"Scenario Loaded: {scenario_path} ({len(scenario)} steps)")
    return scenario


# ---------------------------
# Scenario Runner Class
# ---------------------------

class ScenarioRunner:
    """Executes a scenario once, step by step, writing evidence and a summary."""

    def __init__(
        self,
        config: RunConfig,
        *,
        transport: Optional[HttpTransport] = None,
        mutator: Optional[FuzzMutator] = None,
        evidence_sink: Optional[EvidenceSink] = None,
        summary_sink: Optional[SummarySink] = None,
        reporter: Optional[ConsoleReporter] = None,
        on_step_complete: Optional[Callable[[SummaryRow], Any]] = None,
    ):
        self.config = config
        self.transport = transport
        self.mutator = mutator or FuzzMutator(seed=config.fuzz_seed)
        self.evidence_sink = evidence_sink or EvidenceSink(config.report_dir)
        self.summary_sink = summary_sink or SummarySink(config.report_dir)
        self.reporter = reporter or ConsoleReporter()
        self.on_step_complete = on_step_complete

        self.configure_logging(self.config.debug)
        logger.info(f"Scenario Runner Initialized: Target='{self.config.base_url}', Fuzz Count={self.config.fuzz_count}, Reports='{self.config.report_dir}'")

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        log_level = logging.DEBUG if debug else logging.INFO
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.setLevel(log_level)

    def create_session(self) -> aiohttp.ClientSession:
        """Creates the aiohttp ClientSession used for the whole run."""
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)
        connector = aiohttp.TCPConnector(ssl=None if self.config.verify_ssl else False)
        return aiohttp.ClientSession(connector=connector, timeout=timeout)

    def iteration_count(self, step: Step) -> int:
        if self.config.fuzz_count > 0 and step.fuzz:
            return 1 + self.config.fuzz_count
        return 1

    async def run(self, scenario: Union[Scenario, List[Step]]) -> RunResult:
        """
        Run every step in order against one shared context and write the summary.
        Opens (and closes) its own aiohttp session unless a transport was injected.
        """
        steps = list(scenario)
        if self.transport is not None:
            return await self._run_steps(steps)

        async with self.create_session() as session:
            self.transport = HttpTransport(session)
            try:
                return await self._run_steps(steps)
            finally:
                self.transport = None

    async def _run_steps(self, steps: List[Step]) -> RunResult:
        context: Dict[str, Any] = {}
        rows: List[SummaryRow] = []
        run_start_time = time.monotonic()

        for step in steps:
            for iteration in range(self.iteration_count(step)):
                if iteration > 0 and step.body is not None:
                    iteration_step = step.model_copy(update={"body": self.mutator.mutate(step.body)})
                else:
                    iteration_step = step
                label = step.id if iteration == 0 else f"{step.id}_f{iteration}"

                outcome = await self.execute_step(iteration_step, context, label)
                row = SummaryRow(
                    test_id=label,
                    title=step.title or step.id,
                    passed=outcome.passed,
                    http_status=outcome.status,
                    notes=outcome.notes,
                    evidence=outcome.evidence_path,
                )
                rows.append(row)
                self.reporter.report_row(row)
                if self.on_step_complete:
                    self.on_step_complete(row)

        summary_path = self.summary_sink.write(rows)
        self.reporter.report_summary(summary_path)
        passed_count = sum(1 for row in rows if row.passed)
        logger.info(f"Scenario finished: {passed_count}/{len(rows)} passed in {time.monotonic() - run_start_time:.3f} seconds.")
        return RunResult(rows=rows, summary_path=summary_path)

    async def execute_step(self, step: Step, context: Dict[str, Any], label: str) -> StepOutcome:
        """
        Executes one iteration of a step: template the request, perform the exchange,
        update the context from `save`, evaluate `expect` and write the evidence record.
        A transport failure fails the step but never escapes this method.
        """
        if self.transport is None:
            raise ScenarioRunnerError("No HTTP transport available; call run() or inject a transport.")

        step_identifier = f"'{step.title}' ({label})" if step.title else f"({label})"
        url = self.config.base_url + render_template(step.url, context)
        headers = render_template(step.headers or {}, context)
        body = render_template(step.body if step.body is not None else {}, context)

        started_at = datetime.now(timezone.utc).isoformat()
        request_start_time = time.monotonic()
        response: Optional[HttpResponse] = None
        error: Optional[Dict[str, Any]] = None
        try:
            response = await self.transport.send(step.method, url, headers, body)
        except TransportError as e:
            cause = e.__cause__ or e
            error = {
                "type": type(cause).__name__,
                "message": str(e),
                "traceback": traceback.format_exc(),
            }
        elapsed_ms = round((time.monotonic() - request_start_time) * 1000, 2)

        if response is not None and step.save:
            propagate_context(step.save, response, context)

        passed = False
        notes = "no assertions"
        if response is not None and step.expect is not None:
            result = evaluate_expectation(step.expect, response.status, response.body)
            passed, notes = result.passed, result.notes
        elif response is None:
            notes = (error or {}).get("message") or "request failed"
            logger.warning(f"Step {step_identifier}: request failed: {notes}")

        record = EvidenceRecord(
            id=step.id,
            label=label,
            started_at=started_at,
            request={"method": step.method, "url": url, "headers": headers, "body": body},
            response=(
                {"status": response.status, "headers": response.headers, "body": response.body}
                if response is not None else None
            ),
            error=error,
            elapsed_ms=elapsed_ms,
        )
        evidence_path = self.evidence_sink.write(record)
        logger.debug(f"Step {step_identifier}: evidence written to {evidence_path}")

        return StepOutcome(
            passed=passed,
            notes=notes,
            status=response.status if response is not None else None,
            evidence_path=evidence_path,
            record=record,
        )
