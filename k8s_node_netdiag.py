#!/usr/bin/env python3
"""
Kubernetes Node Network Diagnostics v1.0.0

Runs low-level networking commands on cluster nodes through a diagnostic agent
DaemonSet (netshoot-style image) and turns their text output into structured
records.

================================================================================
FEATURES
================================================================================

   • Interfaces, addresses, routes and policy rules (ip -j)
   • iptables / ip6tables rule dumps per table, optionally filtered by chain
   • Connection-tracking entries with original/reply tuples
   • Ping + TCP port probes from any node, or from every node at once
   • Timed HTTP(S) probes (DNS, connect, TLS, first byte)
   • DNS queries resolved from the node's network namespace

================================================================================
USAGE
================================================================================

List the nodes that can be targeted:
    python k8s_node_netdiag.py nodes

Dump the nat table on a node:
    python k8s_node_netdiag.py iptables worker-1 --table nat

Conntrack entries for an address (falls back to a destination filter):
    python k8s_node_netdiag.py conntrack worker-1 --filter 10.42.0.15

Ping + port probe from one node, then from all nodes:
    python k8s_node_netdiag.py connectivity worker-1 10.43.0.10 --port 53
    python k8s_node_netdiag.py sweep 10.43.0.10 --port 53

Against an EKS cluster (kubeconfig is updated through the AWS CLI):
    python k8s_node_netdiag.py --profile prod --region eu-west-1 \\
        --cluster-name my-cluster networking ip-10-0-1-12.ec2.internal

================================================================================
EXIT CODES
================================================================================

    0   - Diagnostic completed
    1   - Diagnostic returned an error result
    2   - Configuration, authentication or bootstrap error
    130 - Interrupted by user (Ctrl+C)

================================================================================
AGENT REQUIREMENTS
================================================================================

A ready pod labelled app.kubernetes.io/name=netdiag-agent must run on every
node (hostNetwork, NET_ADMIN) in the netdiag namespace, with a container named
netshoot that provides sh, ip, iptables-save, ip6tables-save, conntrack, ping,
nc, curl and dig. Namespace, selector and container are configurable.

================================================================================
"""

# === SECTION 1: IMPORTS & CONSTANTS ===

import argparse
import boto3
import botocore.exceptions
import codecs
import functools
import json
import logging
import math
import os
import re
import subprocess
import sys
import threading
import time
import uuid
import yaml
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlparse

# Configure module-level logger
logger = logging.getLogger(__name__)

logger.setLevel(logging.INFO)

VERSION = "1.0.0"
DEFAULT_EXEC_TIMEOUT = 30
DEFAULT_KUBECTL_TIMEOUT = 30
NODE_CACHE_TTL_SECONDS = 60
MAX_PARALLEL_WORKERS = 8
MAX_OUTPUT_BYTES = 1024 * 1024
STREAM_CHUNK_SIZE = 64 * 1024

DEBUG_AGENT_NAMESPACE = "netdiag"
DEBUG_AGENT_LABEL = "app.kubernetes.io/name=netdiag-agent"
DEBUG_AGENT_CONTAINER = "netshoot"

CONNTRACK_DEFAULT_LIMIT = 50
CONNTRACK_MAX_LIMIT = 200
CURL_DEFAULT_TIMEOUT = 10
CURL_MAX_TIMEOUT = 30
CURL_EXEC_GRACE_SECONDS = 5
PING_COUNT = 3
PING_WAIT_SECONDS = 2
NC_WAIT_SECONDS = 3
DIG_TIMEOUT_SECONDS = 2

VALID_IPTABLES_TABLES = ("filter", "nat", "mangle", "raw")
VALID_DNS_RECORD_TYPES = ("A", "AAAA", "CNAME", "MX", "NS", "PTR", "SOA", "SRV", "TXT")

# Exit codes a shell reports when the tool itself is missing or not executable
MISSING_TOOL_EXIT_CODES = (126, 127)

# Exit code for a completed command whose transport reported failure without a code
REMOTE_FAILURE_EXIT_CODE = 1

TRANSPORT_FALLBACK_MESSAGE = "Connection failed - check network policy and access control"

# curl -w template; every value comes back as a string
TIMED_PROBE_WRITE_OUT = json.dumps(
    {
        "status_code": "%{http_code}",
        "time_total": "%{time_total}",
        "time_namelookup": "%{time_namelookup}",
        "time_connect": "%{time_connect}",
        "time_appconnect": "%{time_appconnect}",
        "time_starttransfer": "%{time_starttransfer}",
        "remote_ip": "%{remote_ip}",
        "remote_port": "%{remote_port}",
        "size_download": "%{size_download}",
    }
)


# === SECTION 2: EXCEPTION CLASSES ===


class NetDiagError(Exception):
    """Base exception for node network diagnostics"""

    error_code = "INTERNAL_ERROR"


class ValidationError(NetDiagError):
    """Caller-supplied input has the wrong shape"""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, valid_nodes: Optional[list] = None):
        super().__init__(message)
        self.valid_nodes = valid_nodes


class InputValidationError(ValidationError):
    """Invalid or unsafe input parameter"""

    pass


class NotFoundError(NetDiagError):
    """No matching node or diagnostic agent"""

    error_code = "NOT_FOUND"


class TransportTimeout(NetDiagError):
    """Remote command did not finish within its bound"""

    error_code = "TIMEOUT"

    def __init__(self, agent, timeout: float, elapsed: Optional[float] = None):
        super().__init__(f"Command on {agent} timed out after {timeout}s")
        self.agent = agent
        self.timeout = timeout
        self.elapsed = elapsed


class TransportFailure(NetDiagError):
    """Exec transport failed before the remote command reported a status"""

    error_code = "TRANSPORT_ERROR"

    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.detail = detail


class RemoteNonZeroExit(NetDiagError):
    """Remote command ran but its failure leaves nothing to report"""

    error_code = "REMOTE_EXIT_ERROR"

    def __init__(self, message: str, result: "ExecResult"):
        super().__init__(message)
        self.result = result


class ConfigurationError(NetDiagError):
    """Invalid configuration file or settings"""

    error_code = "CONFIG_ERROR"


class AWSAuthenticationError(NetDiagError):
    """AWS authentication failed"""

    error_code = "AWS_AUTH_ERROR"


class ClusterNotFoundError(NetDiagError):
    """EKS cluster not found"""

    error_code = "CLUSTER_NOT_FOUND"


class KubectlNotAvailableError(NetDiagError):
    """kubectl or the AWS CLI is not available in PATH"""

    error_code = "KUBECTL_UNAVAILABLE"


def error_result(error: NetDiagError) -> dict:
    """Convert a diagnostic exception into the structured error shape."""
    result = {"error": True, "code": error.error_code, "message": str(error)}
    if isinstance(error, ValidationError) and error.valid_nodes is not None:
        result["valid_nodes"] = list(error.valid_nodes)
    if isinstance(error, TransportTimeout):
        result["timeout_seconds"] = error.timeout
    if isinstance(error, RemoteNonZeroExit):
        result["exit_code"] = error.result.exit_code
        if error.result.stderr.strip():
            result["stderr"] = error.result.stderr.strip()
    return result


KUBECTL_SERVER_ERROR_RE = re.compile(r"^Error from server(?: \(([^)]*)\))?:\s*(.+)$", re.MULTILINE)
KUBECTL_CLIENT_ERROR_RE = re.compile(r"^error:\s*(.+)$", re.MULTILINE | re.IGNORECASE)


def _message_from_body(body: dict) -> Optional[str]:
    response = body.get("response")
    if isinstance(response, dict):
        response_body = response.get("body")
        if isinstance(response_body, dict) and response_body.get("message"):
            return str(response_body["message"])

    nested = body.get("body")
    if isinstance(nested, dict) and nested.get("message"):
        return str(nested["message"])

    if body.get("message"):
        return str(body["message"])

    status = body.get("statusCode") or body.get("code")
    if status and nested:
        text = nested if isinstance(nested, str) else json.dumps(nested)
        return f"HTTP {status}: {text}"
    return None


def _message_from_text(text: str) -> Optional[str]:
    text = text.strip()
    if not text:
        return None

    if text.startswith("{"):
        try:
            body = json.loads(text)
        except ValueError:
            body = None
        if isinstance(body, dict):
            return _message_from_body(body)

    match = KUBECTL_SERVER_ERROR_RE.search(text)
    if match:
        return match.group(2).strip()
    match = KUBECTL_CLIENT_ERROR_RE.search(text)
    if match:
        return match.group(1).strip()

    # kubectl prints connection problems (Unable to connect to the server: ...) as plain lines
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else None


def classify_transport_error(error: Any) -> str:
    """Reduce a transport error of any shape to an operator-readable message.

    Accepts exceptions, API-style dicts (``message``, ``body.message``,
    ``response.body.message``, ``statusCode`` + ``body``), kubectl stderr text
    (``Error from server (Reason): ...``, ``error: ...``, JSON Status objects,
    otherwise its last non-empty line) and anything else. The fallback message
    is used only when nothing readable is left; never returns an empty string.
    """
    message = None
    if isinstance(error, (bytes, bytearray)):
        error = error.decode("utf-8", errors="replace")

    if isinstance(error, dict):
        message = _message_from_body(error)
    elif isinstance(error, str):
        message = _message_from_text(error)
    elif isinstance(error, BaseException):
        message = str(error).strip()

    return message or TRANSPORT_FALLBACK_MESSAGE


# === SECTION 3: INPUT VALIDATION ===


DNS_LABEL_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"

INPUT_VALIDATION_PATTERNS = {
    "profile": re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$"),
    "region": re.compile(r"^[a-z]{2}-[a-z]+-\d+$"),
    "cluster_name": re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$"),
    "namespace": re.compile(DNS_LABEL_PATTERN),
    "resource_name": re.compile(DNS_LABEL_PATTERN),
    "kube_context": re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._:/@-]*$"),
    "kubeconfig": re.compile(r"^[a-zA-Z0-9._/~][a-zA-Z0-9._/~-]*$"),
    "label_selector": re.compile(
        r"^[a-zA-Z0-9][a-zA-Z0-9._/-]*=[a-zA-Z0-9._-]*(,[a-zA-Z0-9][a-zA-Z0-9._/-]*=[a-zA-Z0-9._-]*)*$"
    ),
    "chain": re.compile(r"^[A-Z][A-Z0-9_-]*$"),
    "conntrack_filter": re.compile(r"^[a-zA-Z0-9.:/]+$"),
    "ipv4": re.compile(r"^(\d{1,3}\.){3}\d{1,3}$"),
    "ipv6": re.compile(r"^[0-9a-fA-F:]+$"),
    "hostname": re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9.-]*[a-zA-Z0-9])?$"),
}


def validate_input(name: str, value: str) -> str:
    """Validate input parameter against safe pattern to prevent command injection.

    Args:
        name: Parameter name (a key of INPUT_VALIDATION_PATTERNS)
        value: Parameter value to validate

    Returns:
        The validated value (unchanged if valid)

    Raises:
        InputValidationError: If the value contains unsafe characters
    """
    if not value:
        return value

    if name not in INPUT_VALIDATION_PATTERNS:
        raise InputValidationError(f"Unknown parameter: {name}")

    pattern = INPUT_VALIDATION_PATTERNS[name]
    if not isinstance(value, str) or not pattern.match(value):
        raise InputValidationError(
            f"Invalid {name}: '{value}'. Contains characters that may be unsafe for remote commands."
        )

    return value


def validate_target(target: str) -> str:
    """Accept an IPv4 address, IPv6 address or hostname."""
    if not target or not isinstance(target, str):
        raise InputValidationError("Invalid target. Must be an IP address or hostname")
    if not any(INPUT_VALIDATION_PATTERNS[kind].match(target) for kind in ("ipv4", "ipv6", "hostname")):
        raise InputValidationError("Invalid target. Must be an IP address or hostname")
    return target


def validate_port(port: Optional[int]) -> Optional[int]:
    """Ports are a hard protocol limit, so out-of-range values are rejected."""
    if port is None:
        return None
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise InputValidationError("Port must be an integer between 1 and 65535")
    return port


def validate_url(url: str) -> str:
    if not url or not isinstance(url, str) or any(ch.isspace() or ord(ch) < 32 for ch in url):
        raise InputValidationError("Invalid URL format")
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        raise InputValidationError("Invalid URL format")
    if parsed.scheme not in ("http", "https"):
        raise InputValidationError("URL scheme must be http or https")
    if not hostname:
        raise InputValidationError("Invalid URL format")
    return url


def clamp_int(value: Any, minimum: int, maximum: int, default: int) -> int:
    """Clamp a numeric bound server-side; missing or zero values use the default."""
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if number == 0:
        return default
    return max(minimum, min(maximum, number))


# === SECTION 4: DATA MODEL ===


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class AgentHandle:
    """A located diagnostic agent. Valid for a single exec call."""

    namespace: str
    pod_name: str
    container_name: str
    node_name: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.namespace}/{self.pod_name} (container {self.container_name})"


@dataclass
class IptablesChain:
    name: str
    policy: Optional[str] = None
    rules: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class IptablesTable:
    table: str
    chains: list = field(default_factory=list)

    @property
    def rule_count(self) -> int:
        return sum(len(chain.rules) for chain in self.chains)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConntrackEntry:
    protocol: str
    protocol_number: str
    ttl: str
    state: Optional[str] = None
    src: Optional[str] = None
    dst: Optional[str] = None
    sport: Optional[str] = None
    dport: Optional[str] = None
    reply_src: Optional[str] = None
    reply_dst: Optional[str] = None
    reply_sport: Optional[str] = None
    reply_dport: Optional[str] = None
    mark: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PingResult:
    host: str = ""
    transmitted: int = 0
    received: int = 0
    loss_percent: float = 100.0
    rtt_min: Optional[float] = None
    rtt_avg: Optional[float] = None
    rtt_max: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProbeTiming:
    total_seconds: float = 0.0
    dns_seconds: float = 0.0
    connect_seconds: float = 0.0
    tls_seconds: float = 0.0
    first_byte_seconds: float = 0.0


@dataclass
class ProbeRemote:
    ip: Optional[str] = None
    port: Optional[int] = None


@dataclass
class TimedProbeResult:
    status_code: int = 0
    timing: ProbeTiming = field(default_factory=ProbeTiming)
    remote: ProbeRemote = field(default_factory=ProbeRemote)
    size_bytes: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DnsAnswer:
    name: str
    ttl: int
    record_class: str
    record_type: str
    data: str


@dataclass
class DnsQueryResult:
    status: Optional[str] = None
    answers: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# === SECTION 5: FORMAT PARSERS ===


def _parse_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None:
        return default
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return default


def _parse_float(value: Any, default: Optional[float]) -> Optional[float]:
    if value is None:
        return default
    try:
        number = float(str(value).strip())
    except ValueError:
        return default
    return number if math.isfinite(number) else default


CHAIN_DECLARATION_RE = re.compile(r"^:(\S+)\s+(\S+)")


def parse_iptables_save(output: str) -> IptablesTable:
    """Parse iptables-save / ip6tables-save output for one table.

    ``*table`` names the table, ``:CHAIN POLICY [packets:bytes]`` declares a
    chain (``-`` means a user chain without policy) and ``-A CHAIN ...`` appends
    a rule, declaring the chain on first use. ``COMMIT`` and comments are
    ignored. Chains keep first-seen order and rules keep source order.
    """
    table = "unknown"
    chains: dict[str, IptablesChain] = {}

    for line in (output or "").splitlines():
        if not line.strip():
            continue

        if line.startswith("*"):
            table = line[1:].strip()
        elif line.startswith(":"):
            match = CHAIN_DECLARATION_RE.match(line)
            if match:
                name, policy = match.groups()
                policy = None if policy == "-" else policy
                if name in chains:
                    chains[name].policy = policy
                else:
                    chains[name] = IptablesChain(name=name, policy=policy)
        elif line.startswith("-A "):
            chain_name, _, rule = line[3:].partition(" ")
            if not chain_name:
                continue
            chain = chains.get(chain_name)
            if chain is None:
                chain = chains[chain_name] = IptablesChain(name=chain_name)
            chain.rules.append(rule)

    return IptablesTable(table=table, chains=list(chains.values()))


ORIGINAL_TUPLE_FIELDS = {"src": "src", "dst": "dst", "sport": "sport", "dport": "dport", "mark": "mark"}
REPLY_TUPLE_FIELDS = {"src": "reply_src", "dst": "reply_dst", "sport": "reply_sport", "dport": "reply_dport"}


def parse_conntrack(output: str) -> list[ConntrackEntry]:
    """Parse ``conntrack -L`` listings.

    Direction is positional: keys before the second ``src=`` belong to the
    original tuple, keys from it onwards to the reply tuple.
    """
    entries = []

    for line in (output or "").splitlines():
        if not line.strip() or line.startswith("conntrack "):
            continue

        fields = line.split()
        if len(fields) < 4:
            continue

        entry = ConntrackEntry(protocol=fields[0], protocol_number=fields[1], ttl=fields[2])
        if "=" not in fields[3]:
            entry.state = fields[3]

        seen_src = False
        in_reply = False
        for token in fields[3:]:
            if token.startswith("["):
                continue
            key, sep, value = token.partition("=")
            if not sep:
                continue

            if key == "src":
                if seen_src:
                    in_reply = True
                seen_src = True

            attribute = (REPLY_TUPLE_FIELDS if in_reply else ORIGINAL_TUPLE_FIELDS).get(key)
            if attribute:
                setattr(entry, attribute, value)

        entries.append(entry)

    return entries


PING_HOST_RE = re.compile(r"PING\s+(\S+)")
PING_STATS_RE = re.compile(
    r"(\d+)\s+packets?\s+transmitted,\s+(\d+)\s+(?:packets?\s+)?received,"
    r"(?:\s+\+\d+\s+(?:errors?|duplicates?),)*"
    r"\s+(\d+(?:\.\d+)?)%\s+packet\s+loss"
)
PING_RTT_RE = re.compile(r"(?:rtt|round-trip)\s+min/avg/max(?:/\S+)?\s*=\s*([\d.]+)/([\d.]+)/([\d.]+)")


def parse_ping(output: str) -> PingResult:
    """Parse iputils or busybox ping output.

    Round-trip fields stay None when nothing was received; a zero would read as
    a real measurement.
    """
    result = PingResult()
    output = output or ""

    match = PING_HOST_RE.search(output)
    if match:
        result.host = match.group(1)

    match = PING_STATS_RE.search(output)
    if match:
        result.transmitted = int(match.group(1))
        result.received = int(match.group(2))
        result.loss_percent = float(match.group(3))

    match = PING_RTT_RE.search(output)
    if match and result.received > 0:
        result.rtt_min = _parse_float(match.group(1), None)
        result.rtt_avg = _parse_float(match.group(2), None)
        result.rtt_max = _parse_float(match.group(3), None)

    return result


def parse_timed_probe(output: str) -> Optional[TimedProbeResult]:
    """Parse the JSON record produced by curl with TIMED_PROBE_WRITE_OUT.

    Returns None when the output is not a JSON object at all.
    """
    try:
        data = json.loads((output or "").strip())
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    return TimedProbeResult(
        status_code=_parse_int(data.get("status_code"), 0) or 0,
        timing=ProbeTiming(
            total_seconds=_parse_float(data.get("time_total"), 0.0),
            dns_seconds=_parse_float(data.get("time_namelookup"), 0.0),
            connect_seconds=_parse_float(data.get("time_connect"), 0.0),
            tls_seconds=_parse_float(data.get("time_appconnect"), 0.0),
            first_byte_seconds=_parse_float(data.get("time_starttransfer"), 0.0),
        ),
        remote=ProbeRemote(
            ip=data.get("remote_ip") or None,
            port=_parse_int(data.get("remote_port"), None) or None,
        ),
        size_bytes=_parse_int(data.get("size_download"), 0) or 0,
    )


def split_sections(output: str, separator: str, names: tuple) -> dict:
    """Split multi-command output on a separator line and decode each JSON section."""
    sections = [section.strip() for section in (output or "").split(separator)]
    result = {}
    for index, name in enumerate(names):
        text = sections[index] if index < len(sections) else ""
        if not text:
            result[name] = []
            continue
        try:
            result[name] = json.loads(text)
        except ValueError:
            result[name] = text
    return result


DIG_STATUS_RE = re.compile(r"->>HEADER<<-.*\bstatus:\s*([A-Z]+)")


def parse_dig(output: str) -> DnsQueryResult:
    """Parse ``dig +noall +comments +answer`` output."""
    result = DnsQueryResult()

    for line in (output or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith(";"):
            match = DIG_STATUS_RE.search(stripped)
            if match:
                result.status = match.group(1)
            continue

        fields = stripped.split(None, 4)
        if len(fields) < 5:
            continue
        ttl = _parse_int(fields[1], None)
        if ttl is None:
            continue
        result.answers.append(
            DnsAnswer(name=fields[0], ttl=ttl, record_class=fields[2], record_type=fields[3], data=fields[4])
        )

    return result


CONNTRACK_SUMMARY_RE = re.compile(r"^conntrack v\S+ \(conntrack-tools\):.*$", re.MULTILINE)


def strip_conntrack_summary(stderr: str) -> str:
    """conntrack prints its entry count on stderr; that is not an error."""
    return CONNTRACK_SUMMARY_RE.sub("", stderr or "").strip()


# === SECTION 6: UTILITY CLASSES ===


class PerformanceTracker:
    """Track and report per-node probe timings."""

    def __init__(self):
        self._timings: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def record(self, name: str, duration: float) -> None:
        with self._lock:
            self._timings.setdefault(name, []).append(duration)

    def get_summary(self) -> dict[str, dict]:
        summary = {}
        with self._lock:
            for name, times in self._timings.items():
                if times:
                    summary[name] = {
                        "calls": len(times),
                        "total": sum(times),
                        "avg": sum(times) / len(times),
                        "min": min(times),
                        "max": max(times),
                    }
        return summary

    def get_slowest(self, limit: int = 5) -> list[tuple[str, float]]:
        summary = self.get_summary()
        ordered = sorted(summary.items(), key=lambda x: x[1]["total"], reverse=True)
        return [(name, stats["total"]) for name, stats in ordered[:limit]]


class ProgressTracker:
    """Console progress for the CLI. Everything goes to stderr so stdout stays JSON."""

    def __init__(self, verbose=False, quiet=False, log_level=None):
        self.verbose = verbose
        self.quiet = quiet
        self.steps_completed = 0
        self.log_level = log_level
        self._configure_logging()

    def _configure_logging(self):
        """Configure logging based on settings."""
        if self.log_level:
            logger.setLevel(self.log_level)
        elif self.verbose:
            logger.setLevel(logging.DEBUG)
        elif self.quiet:
            logger.setLevel(logging.WARNING)
        else:
            logger.setLevel(logging.INFO)

    def step(self, message):
        self.steps_completed += 1
        logger.debug(f"[{self.steps_completed}] {message}")
        if not self.quiet:
            print(f"[{self.steps_completed}] {message}", file=sys.stderr)

    def info(self, message):
        logger.debug(message)
        if self.verbose and not self.quiet:
            print(f"ℹ️  {message}", file=sys.stderr)

    def warning(self, message):
        logger.warning(message)

    def error(self, message):
        logger.error(message)
        print(f"✗ {message}", file=sys.stderr)


class ConfigLoader:
    """Load configuration from YAML/JSON files with environment variable support."""

    ENV_MAPPING = {
        "NETDIAG_KUBE_CONTEXT": "kube_context",
        "NETDIAG_KUBECONFIG": "kubeconfig",
        "NETDIAG_AGENT_NAMESPACE": "agent_namespace",
        "NETDIAG_AGENT_SELECTOR": "agent_selector",
        "NETDIAG_AGENT_CONTAINER": "agent_container",
        "NETDIAG_EXEC_TIMEOUT": "exec_timeout",
        "NETDIAG_NODE_CACHE_TTL": "node_cache_ttl",
        "NETDIAG_PROFILE": "profile",
        "NETDIAG_REGION": "region",
        "NETDIAG_CLUSTER": "cluster_name",
        "NETDIAG_VERBOSE": "verbose",
        "NETDIAG_QUIET": "quiet",
    }

    @staticmethod
    def load(config_path: Optional[str] = None) -> dict:
        config = {}
        if config_path:
            if not os.path.exists(config_path):
                raise ConfigurationError(f"Config file not found: {config_path}")
            with open(config_path, "r") as f:
                content = f.read()
            try:
                if config_path.endswith((".yaml", ".yml")):
                    config = yaml.safe_load(content) or {}
                elif config_path.endswith(".json"):
                    config = json.loads(content)
                else:
                    raise ConfigurationError(f"Unsupported config format: {config_path} (use .yaml, .yml or .json)")
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ConfigurationError(f"Failed to parse {config_path}: {e}")
            if not isinstance(config, dict):
                raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        config.update(ConfigLoader._load_from_env())
        return config

    @staticmethod
    def _load_from_env() -> dict:
        config = {}
        for env_var, config_key in ConfigLoader.ENV_MAPPING.items():
            value = os.environ.get(env_var)
            if value:
                if config_key in ("verbose", "quiet"):
                    config[config_key] = value.lower() in ("true", "1", "yes")
                elif config_key in ("exec_timeout", "node_cache_ttl"):
                    try:
                        config[config_key] = int(value)
                    except ValueError:
                        logger.warning(f"Ignoring non-integer {env_var}={value!r}")
                else:
                    config[config_key] = value
        return config


# === SECTION 7: CLUSTER DIRECTORY & AGENT LOCATOR ===


class KubectlRunner:
    """Run kubectl with shell=False, adding the configured kubeconfig and context."""

    def __init__(
        self,
        kubectl_path: str = "kubectl",
        kube_context: Optional[str] = None,
        kubeconfig: Optional[str] = None,
        timeout: int = DEFAULT_KUBECTL_TIMEOUT,
    ):
        validate_input("kube_context", kube_context)
        validate_input("kubeconfig", kubeconfig)
        self.kubectl_path = kubectl_path
        self.kube_context = kube_context
        self.kubeconfig = kubeconfig
        self.timeout = timeout

    def build_command(self, args: list) -> list:
        cmd = [self.kubectl_path]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        if self.kube_context:
            cmd += ["--context", self.kube_context]
        return cmd + list(args)

    def run(self, args: list, timeout: Optional[int] = None) -> tuple[bool, str]:
        """Run a single kubectl command.

        Returns:
            Tuple of (success, output or error message)
        """
        timeout = timeout or self.timeout
        try:
            result = subprocess.run(
                self.build_command(args),
                shell=False,
                capture_output=True,
                text=True,
                check=True,
                timeout=timeout,
            )
            return True, result.stdout
        except subprocess.TimeoutExpired:
            return False, f"error: kubectl timed out after {timeout}s"
        except subprocess.CalledProcessError as e:
            return False, e.stderr if e.stderr else "Command failed"
        except FileNotFoundError:
            return False, "error: kubectl not found in PATH"

    def get_json(self, args: list) -> dict:
        success, output = self.run(list(args) + ["-o", "json"])
        if not success:
            raise TransportFailure(classify_transport_error(output), detail=output)
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise TransportFailure(f"Unexpected kubectl output: {e}", detail=output)


def is_pod_ready(pod: dict) -> bool:
    """Running, not terminating, and reporting Ready=True."""
    if pod.get("metadata", {}).get("deletionTimestamp"):
        return False
    status = pod.get("status", {})
    if status.get("phase") != "Running":
        return False
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in status.get("conditions", []))


class KubectlClusterDirectory:
    """Node and pod lookups against the cluster API through kubectl."""

    def __init__(self, kubectl: KubectlRunner):
        self._kubectl = kubectl

    def list_node_names(self) -> list[str]:
        data = self._kubectl.get_json(["get", "nodes"])
        names = []
        for item in data.get("items", []):
            name = item.get("metadata", {}).get("name")
            if name:
                names.append(name)
        return names

    def find_ready_pod(self, namespace: str, label_selector: str, node_name: str) -> Optional[dict]:
        data = self._kubectl.get_json(
            [
                "get",
                "pods",
                "-n",
                namespace,
                "-l",
                label_selector,
                "--field-selector",
                f"spec.nodeName={node_name}",
            ]
        )
        for pod in data.get("items", []):
            # Field selectors are advisory for fakes and older servers
            if pod.get("spec", {}).get("nodeName", node_name) != node_name:
                continue
            if is_pod_ready(pod):
                return pod
        return None


class NodeRegistry:
    """Cached set of valid node names, refreshed after the TTL expires.

    The snapshot is a single ``(names, expires_at)`` tuple replaced in one
    assignment, so concurrent refreshes race harmlessly: the last one wins.
    """

    def __init__(
        self,
        lister: Callable[[], list],
        ttl_seconds: float = NODE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lister = lister
        self._ttl = ttl_seconds
        self._clock = clock
        self._snapshot: tuple[tuple, float] = ((), float("-inf"))

    @property
    def expired(self) -> bool:
        return self._clock() >= self._snapshot[1]

    def refresh(self) -> list[str]:
        try:
            names = tuple(name for name in self._lister() if name)
        except NetDiagError:
            raise
        except Exception as e:
            raise TransportFailure(classify_transport_error(e), detail=e) from e
        self._snapshot = (names, self._clock() + self._ttl)
        logger.debug(f"Node registry refreshed: {len(names)} nodes")
        return list(names)

    def invalidate(self) -> None:
        self._snapshot = (self._snapshot[0], float("-inf"))

    def get_valid_nodes(self) -> list[str]:
        if self.expired:
            return self.refresh()
        return list(self._snapshot[0])

    def validate(self, node: str) -> str:
        valid = self.get_valid_nodes()
        if not node or node not in valid:
            raise ValidationError(f"Invalid node '{node}'. Valid nodes: {', '.join(valid)}", valid_nodes=valid)
        return node


class AgentLocator:
    """Find a ready diagnostic-agent pod pinned to a node. Never cached."""

    def __init__(
        self,
        directory,
        namespace: str = DEBUG_AGENT_NAMESPACE,
        label_selector: str = DEBUG_AGENT_LABEL,
        container: str = DEBUG_AGENT_CONTAINER,
    ):
        validate_input("namespace", namespace)
        validate_input("label_selector", label_selector)
        validate_input("resource_name", container)
        self._directory = directory
        self.namespace = namespace
        self.label_selector = label_selector
        self.container = container

    def locate(self, node: str) -> AgentHandle:
        try:
            pod = self._directory.find_ready_pod(self.namespace, self.label_selector, node)
        except NetDiagError:
            raise
        except Exception as e:
            raise TransportFailure(classify_transport_error(e), detail=e) from e
        pod_name = (pod or {}).get("metadata", {}).get("name")
        if not pod_name:
            raise NotFoundError(f"No ready debug-agent pod found on node '{node}'")
        agent = AgentHandle(self.namespace, pod_name, self.container, node)
        logger.debug(f"Located agent {agent} on {node}")
        return agent


# === SECTION 8: REMOTE EXEC CHANNEL ===


class ExecState(Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    TRANSPORT_FAILED = "transport_failed"


TERMINAL_STATES = frozenset({ExecState.COMPLETED, ExecState.TIMED_OUT, ExecState.TRANSPORT_FAILED})


class ExecSession:
    """One remote command: Idle -> Executing -> Completed | TimedOut | TransportFailed.

    Transport events (output chunks, completion, failure, close) and the timer
    race freely; the first terminal event resolves the session and every later
    event is ignored. The timer starts when the session enters Executing and is
    cancelled on resolution.
    """

    def __init__(
        self,
        agent: AgentHandle,
        command: list,
        timeout: float = DEFAULT_EXEC_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable = threading.Timer,
    ):
        self.agent = agent
        self.command = list(command)
        self.timeout = timeout
        self.state = ExecState.IDLE
        self._clock = clock
        self._timer_factory = timer_factory
        self._timer = None
        self._started_at: Optional[float] = None
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._lock = threading.Lock()
        self._resolved = threading.Event()
        self._result: Optional[ExecResult] = None
        self._error: Optional[NetDiagError] = None

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    @property
    def resolved(self) -> bool:
        return self._resolved.is_set()

    def start(self) -> None:
        with self._lock:
            if self.state is not ExecState.IDLE:
                raise RuntimeError(f"Exec session already {self.state.value}")
            self.state = ExecState.EXECUTING
            self._started_at = self._clock()
            self._timer = self._timer_factory(self.timeout, self._on_timeout)
            self._timer.daemon = True
            self._timer.start()

    def feed_stdout(self, chunk: str) -> None:
        with self._lock:
            if self.state is ExecState.EXECUTING and chunk:
                self._stdout.append(chunk)

    def feed_stderr(self, chunk: str) -> None:
        with self._lock:
            if self.state is ExecState.EXECUTING and chunk:
                self._stderr.append(chunk)

    def snapshot(self) -> tuple[str, str]:
        with self._lock:
            return "".join(self._stdout), "".join(self._stderr)

    def complete(self, exit_code: Optional[int], stderr: Optional[str] = None) -> bool:
        """The remote command reported a status."""
        if exit_code is None:
            exit_code = REMOTE_FAILURE_EXIT_CODE
        return self._resolve(ExecState.COMPLETED, exit_code=exit_code, stderr=stderr)

    def fail(self, error: Any) -> bool:
        """The transport failed; the error may be of any shape."""
        failure = TransportFailure(classify_transport_error(error), detail=error)
        resolved = self._resolve(ExecState.TRANSPORT_FAILED, error=failure)
        if resolved:
            logger.warning(f"Exec transport to {self.agent} failed: {failure} (detail: {error!r})")
        return resolved

    def close(self, reason: Optional[str] = None) -> bool:
        """The transport closed. A clean close leaves resolution to the status or the timer."""
        if reason is None:
            return False
        return self.fail({"message": f"Connection closed abnormally: {reason}"})

    def _on_timeout(self) -> None:
        error = TransportTimeout(self.agent, self.timeout, self.elapsed)
        if self._resolve(ExecState.TIMED_OUT, error=error):
            logger.warning(f"{error} ({' '.join(self.command)})")

    def _resolve(self, state, exit_code=None, stderr=None, error=None) -> bool:
        with self._lock:
            if self.state is not ExecState.EXECUTING:
                return False
            self.state = state
            if state is ExecState.COMPLETED:
                self._result = ExecResult(
                    stdout="".join(self._stdout),
                    stderr="".join(self._stderr) if stderr is None else stderr,
                    exit_code=exit_code,
                )
            else:
                self._error = error
            timer = self._timer
        if timer is not None:
            timer.cancel()
        self._resolved.set()
        return True

    def wait(self) -> ExecResult:
        """Block until resolved; return the result or raise the terminal error."""
        if self.state is ExecState.IDLE:
            raise RuntimeError("Exec session was never started")
        self._resolved.wait()
        if self._error is not None:
            raise self._error
        return self._result


REMOTE_EXIT_MARKER_RE = re.compile(r"^command terminated with exit code (\d+)\s*$", re.MULTILINE)


def _pump_stream(stream, sink: Callable[[str], None]) -> None:
    """Forward pipe output to the session as it arrives."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        for chunk in iter(lambda: stream.read1(STREAM_CHUNK_SIZE), b""):
            sink(decoder.decode(chunk))
        sink(decoder.decode(b"", final=True))
    except (OSError, ValueError) as e:
        logger.debug(f"Exec stream closed early: {e}")
    finally:
        stream.close()


class KubectlExecTransport:
    """Drive an ExecSession from a ``kubectl exec`` subprocess.

    kubectl exit 0 means the remote command succeeded. A non-zero remote exit is
    reported by kubectl as ``command terminated with exit code N`` and that code
    is kept. Any other non-zero kubectl exit is a transport failure.
    """

    def __init__(self, kubectl: KubectlRunner, timeout: float = DEFAULT_EXEC_TIMEOUT, popen=subprocess.Popen):
        self._kubectl = kubectl
        self.timeout = timeout
        self._popen = popen

    def build_command(self, agent: AgentHandle, command: list) -> list:
        return self._kubectl.build_command(
            ["exec", "-n", agent.namespace, agent.pod_name, "-c", agent.container_name, "--", *command]
        )

    def execute(self, agent: AgentHandle, command: list, timeout: Optional[float] = None) -> ExecResult:
        session = ExecSession(agent, command, timeout or self.timeout)
        argv = self.build_command(agent, command)
        logger.debug(f"Executing on {agent}: {' '.join(command)}")

        session.start()
        try:
            process = self._popen(
                argv,
                shell=False,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError:
            session.fail({"message": "kubectl not found in PATH"})
            return session.wait()
        except OSError as e:
            session.fail(e)
            return session.wait()

        readers = [
            threading.Thread(target=_pump_stream, args=(process.stdout, session.feed_stdout), daemon=True),
            threading.Thread(target=_pump_stream, args=(process.stderr, session.feed_stderr), daemon=True),
        ]
        for reader in readers:
            reader.start()
        threading.Thread(target=self._await_exit, args=(process, readers, session), daemon=True).start()

        try:
            return session.wait()
        finally:
            if process.poll() is None:
                process.kill()

    @staticmethod
    def _await_exit(process, readers: list, session: ExecSession) -> None:
        for reader in readers:
            reader.join()
        returncode = process.wait()
        _, stderr = session.snapshot()

        if returncode == 0:
            session.complete(0)
        elif returncode < 0:
            session.close(f"kubectl terminated by signal {-returncode}")
        else:
            match = REMOTE_EXIT_MARKER_RE.search(stderr)
            if match:
                session.complete(int(match.group(1)), stderr=REMOTE_EXIT_MARKER_RE.sub("", stderr))
            else:
                session.fail(stderr)


# === SECTION 9: DIAGNOSTIC OPERATIONS ===


def structured_errors(func):
    """Return diagnostic errors as structured results instead of raising."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except NetDiagError as e:
            logger.info(f"{func.__name__}: {e.error_code}: {e}")
            return error_result(e)

    return wrapper


class NetworkDiagnostics:
    """Validated diagnostic operations over the agent exec channel.

    Every public operation returns a dict. Errors come back as
    ``{"error": True, "code": ..., "message": ...}``.

    Example:
        >>> diagnostics = build_diagnostics({"kube_context": "homelab"})
        >>> diagnostics.get_iptables_rules("worker-1", table="nat", chain="POSTROUTING")
    """

    def __init__(
        self,
        registry: NodeRegistry,
        locator: AgentLocator,
        transport,
        exec_timeout: float = DEFAULT_EXEC_TIMEOUT,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        max_workers: int = MAX_PARALLEL_WORKERS,
    ):
        self.registry = registry
        self.locator = locator
        self.transport = transport
        self.exec_timeout = exec_timeout
        self.max_output_bytes = max_output_bytes
        self.max_workers = max_workers

    # === Helper Methods ===

    def _exec_on_node(self, node: str, command: list, timeout: Optional[float] = None) -> ExecResult:
        agent = self.locator.locate(node)
        try:
            return self.transport.execute(agent, command, timeout=timeout or self.exec_timeout)
        except NetDiagError:
            raise
        except Exception as e:
            raise TransportFailure(classify_transport_error(e), detail=e) from e

    def _cap_output(self, text: str) -> tuple[str, bool]:
        encoded = text.encode("utf-8")
        if len(encoded) <= self.max_output_bytes:
            return text, False
        head = encoded[: self.max_output_bytes].decode("utf-8", errors="ignore")
        # Drop the partial last line so line parsers never see a cut record
        cut = head.rfind("\n")
        if cut >= 0:
            head = head[: cut + 1]
        return head, True

    @staticmethod
    def _check_tool(result: ExecResult, tool: str) -> None:
        if result.exit_code in MISSING_TOOL_EXIT_CODES:
            raise RemoteNonZeroExit(
                f"'{tool}' is not available in the debug agent (exit code {result.exit_code})", result
            )

    @staticmethod
    def _require_output(result: ExecResult, tool: str) -> None:
        if result.exit_code != 0 and not result.stdout.strip():
            raise RemoteNonZeroExit(f"{tool} failed with exit code {result.exit_code}", result)

    @staticmethod
    def _attach_stderr(response: dict, stderr: str, key: str = "stderr") -> dict:
        if stderr and stderr.strip():
            response[key] = stderr.strip()
        return response

    # === Operations ===

    @structured_errors
    def list_nodes(self) -> dict:
        nodes = self.registry.get_valid_nodes()
        return {"nodes": nodes, "count": len(nodes)}

    @structured_errors
    def get_node_networking(self, node: str) -> dict:
        """Interfaces, addresses, routes and policy rules from ``ip -j``."""
        self.registry.validate(node)

        separator = f"---NETDIAG-{uuid.uuid4().hex}---"
        script = f" && echo '{separator}' && ".join(
            ["ip -j link show", "ip -j addr show", "ip -j route show", "ip -j rule show"]
        )
        result = self._exec_on_node(node, ["sh", "-c", script])
        self._check_tool(result, "ip")
        self._require_output(result, "ip")

        stdout, truncated = self._cap_output(result.stdout)
        sections = split_sections(stdout, separator, ("interfaces", "addresses", "routes", "rules"))

        response = {"node": node, **sections, "exit_code": result.exit_code}
        if truncated:
            response["output_truncated"] = True
        return self._attach_stderr(response, result.stderr)

    @structured_errors
    def get_iptables_rules(self, node: str, table: str = "filter", chain: Optional[str] = None, ipv6: bool = False) -> dict:
        table = table or "filter"
        if table not in VALID_IPTABLES_TABLES:
            raise ValidationError(f"Invalid table '{table}'. Valid tables: {', '.join(VALID_IPTABLES_TABLES)}")
        validate_input("chain", chain)
        self.registry.validate(node)

        tool = "ip6tables-save" if ipv6 else "iptables-save"
        result = self._exec_on_node(node, [tool, "-t", table])
        self._check_tool(result, tool)
        self._require_output(result, tool)

        stdout, truncated = self._cap_output(result.stdout)
        parsed = parse_iptables_save(stdout)
        if chain:
            parsed.chains = [c for c in parsed.chains if c.name == chain]

        response = {
            "node": node,
            "ip_version": 6 if ipv6 else 4,
            "table": parsed.table,
            "chains": [c.to_dict() for c in parsed.chains],
            "rule_count": parsed.rule_count,
            "exit_code": result.exit_code,
        }
        if truncated:
            response["output_truncated"] = True
        return self._attach_stderr(response, result.stderr)

    @structured_errors
    def get_conntrack_entries(self, node: str, filter: Optional[str] = None, limit: int = CONNTRACK_DEFAULT_LIMIT) -> dict:
        """Connection-tracking entries, optionally for one address or CIDR.

        A source-filtered query that matches nothing is re-issued once with a
        destination filter, since a one-sided filter only matches the address on
        the original tuple's side.
        """
        limit = clamp_int(limit, 1, CONNTRACK_MAX_LIMIT, CONNTRACK_DEFAULT_LIMIT)
        validate_input("conntrack_filter", filter)
        self.registry.validate(node)

        command = ["conntrack", "-L"]
        if filter:
            command += ["-s", filter]
        result = self._exec_on_node(node, command)
        self._check_tool(result, "conntrack")
        stdout, truncated_output = self._cap_output(result.stdout)
        entries = parse_conntrack(stdout)

        fallback_used = False
        if filter and not entries:
            logger.info(f"No conntrack entries with source {filter} on {node}, retrying as destination")
            result = self._exec_on_node(node, ["conntrack", "-L", "-d", filter])
            self._check_tool(result, "conntrack")
            stdout, truncated_output = self._cap_output(result.stdout)
            entries = parse_conntrack(stdout)
            fallback_used = True

        truncated = len(entries) > limit
        entries = entries[:limit]

        response = {"node": node, "total": len(entries), "truncated": truncated}
        if filter:
            response["filter"] = filter
            response["fallback_used"] = fallback_used
        response["entries"] = [e.to_dict() for e in entries]
        response["exit_code"] = result.exit_code
        if truncated_output:
            response["output_truncated"] = True
        return self._attach_stderr(response, strip_conntrack_summary(result.stderr))

    @structured_errors
    def test_pod_connectivity(self, source_node: str, target: str, port: Optional[int] = None) -> dict:
        """Ping a target from a node and optionally probe a TCP port.

        An unreachable target is a normal result, not an error.
        """
        validate_target(target)
        validate_port(port)
        self.registry.validate(source_node)

        ping_result = self._exec_on_node(
            source_node, ["ping", "-c", str(PING_COUNT), "-W", str(PING_WAIT_SECONDS), target]
        )
        self._check_tool(ping_result, "ping")
        ping = parse_ping(ping_result.stdout + ping_result.stderr)

        response = {
            "source_node": source_node,
            "target": target,
            "ping": {
                "transmitted": ping.transmitted,
                "received": ping.received,
                "loss_percent": ping.loss_percent,
                "rtt_min_ms": ping.rtt_min,
                "rtt_avg_ms": ping.rtt_avg,
                "rtt_max_ms": ping.rtt_max,
                "reachable": ping.received > 0,
            },
        }

        if port is not None:
            nc_result = self._exec_on_node(
                source_node, ["nc", "-z", "-w", str(NC_WAIT_SECONDS), target, str(port)]
            )
            self._check_tool(nc_result, "nc")
            tcp_connect = {"port": port, "open": nc_result.exit_code == 0}
            response["tcp_connect"] = self._attach_stderr(tcp_connect, nc_result.stderr, key="detail")

        return response

    @structured_errors
    def curl_ingress(self, url: str, timeout: int = CURL_DEFAULT_TIMEOUT, from_node: Optional[str] = None) -> dict:
        """Timed HTTP(S) probe from inside the cluster."""
        validate_url(url)
        timeout = clamp_int(timeout, 1, CURL_MAX_TIMEOUT, CURL_DEFAULT_TIMEOUT)

        if from_node:
            node = self.registry.validate(from_node)
        else:
            nodes = self.registry.get_valid_nodes()
            if not nodes:
                raise ValidationError("No cluster nodes available")
            node = nodes[0]

        result = self._exec_on_node(
            node,
            ["curl", "-sk", "-o", "/dev/null", "-w", TIMED_PROBE_WRITE_OUT, "--max-time", str(timeout), url],
            timeout=max(self.exec_timeout, timeout + CURL_EXEC_GRACE_SECONDS),
        )
        self._check_tool(result, "curl")

        probe = parse_timed_probe(result.stdout)
        if probe is None:
            response = {
                "url": url,
                "node": node,
                "error": True,
                "code": "CURL_PARSE_ERROR",
                "message": "Failed to parse curl output",
                "raw_output": result.stdout.strip(),
            }
            return self._attach_stderr(response, result.stderr)

        response = {"url": url, "node": node, **probe.to_dict(), "exit_code": result.exit_code}
        return self._attach_stderr(response, result.stderr)

    @structured_errors
    def test_dns_query(self, node: str, domain: str, record_type: str = "A", server: Optional[str] = None) -> dict:
        """Resolve a name with dig from the node's network namespace."""
        if not domain or not INPUT_VALIDATION_PATTERNS["hostname"].match(domain):
            raise InputValidationError("Invalid domain. Must be a hostname")
        record_type = (record_type or "A").upper()
        if record_type not in VALID_DNS_RECORD_TYPES:
            raise ValidationError(
                f"Invalid record type '{record_type}'. Valid types: {', '.join(VALID_DNS_RECORD_TYPES)}"
            )
        if server:
            validate_target(server)
        self.registry.validate(node)

        command = [
            "dig",
            "+noall",
            "+comments",
            "+answer",
            f"+time={DIG_TIMEOUT_SECONDS}",
            "+tries=1",
            "-t",
            record_type,
            domain,
        ]
        if server:
            command.append(f"@{server}")
        result = self._exec_on_node(node, command)
        self._check_tool(result, "dig")

        parsed = parse_dig(result.stdout)
        response = {
            "node": node,
            "domain": domain,
            "type": record_type,
            "server": server,
            "status": parsed.status,
            "answers": [asdict(a) for a in parsed.answers],
            "resolved": parsed.status == "NOERROR" and bool(parsed.answers),
            "exit_code": result.exit_code,
        }
        return self._attach_stderr(response, result.stderr)

    @structured_errors
    def probe_nodes(
        self, target: str, nodes: Optional[list] = None, port: Optional[int] = None, max_workers: Optional[int] = None
    ) -> dict:
        """Run test_pod_connectivity from several nodes concurrently."""
        validate_target(target)
        validate_port(port)
        if nodes:
            for node in nodes:
                self.registry.validate(node)
        else:
            nodes = self.registry.get_valid_nodes()
        if not nodes:
            raise ValidationError("No cluster nodes available")

        tracker = PerformanceTracker()
        results = {}

        def probe(node):
            start_time = time.time()
            outcome = self.test_pod_connectivity(node, target, port)
            return node, outcome, time.time() - start_time

        with ThreadPoolExecutor(max_workers=min(max_workers or self.max_workers, len(nodes))) as executor:
            futures = [executor.submit(probe, node) for node in nodes]
            for completed, future in enumerate(as_completed(futures), 1):
                node, outcome, duration = future.result()
                tracker.record(node, duration)
                results[node] = outcome
                logger.debug(f"[{completed}/{len(nodes)}] probe from {node} finished ({duration:.1f}s)")

        slowest = tracker.get_slowest(3)
        if slowest:
            logger.debug("Slowest nodes: " + ", ".join(f"{n}: {t:.1f}s" for n, t in slowest))

        ordered = [node for node in nodes if node in results]
        return {
            "target": target,
            "port": port,
            "results": {node: results[node] for node in ordered},
            "reachable_from": [n for n in ordered if results[n].get("ping", {}).get("reachable")],
            "unreachable_from": [
                n for n in ordered if not results[n].get("error") and not results[n]["ping"]["reachable"]
            ],
            "failed": [n for n in ordered if results[n].get("error")],
            "timings": tracker.get_summary(),
        }


# === SECTION 10: EKS BOOTSTRAP ===


class EKSConnector:
    """Point kubectl at an EKS cluster using an AWS profile."""

    def __init__(self, profile: Optional[str], region: str, cluster_name: str, progress=None):
        validate_input("profile", profile)
        validate_input("region", region)
        validate_input("cluster_name", cluster_name)
        if not region:
            raise ConfigurationError("--region is required with --cluster-name")

        self.profile = profile
        self.region = region
        self.cluster_name = cluster_name
        self.progress = progress or ProgressTracker()

        try:
            self.session = boto3.Session(profile_name=profile, region_name=region)
            self.eks_client = self.session.client("eks")
            self.sts_client = self.session.client("sts")
        except botocore.exceptions.ProfileNotFound:
            raise AWSAuthenticationError(
                f"AWS profile '{profile}' not found. Run 'aws configure --profile {profile}' to create it."
            )
        except Exception as e:
            raise AWSAuthenticationError(f"Failed to initialize AWS session: {e}")

    def validate_aws_access(self) -> str:
        """Validate AWS credentials; returns the masked caller name."""
        self.progress.step("Validating AWS credentials...")
        try:
            identity = self.sts_client.get_caller_identity()
        except Exception as e:
            raise AWSAuthenticationError(f"AWS authentication failed: {e}")

        account_id = identity["Account"]
        masked_account = f"****{account_id[-4:]}" if len(account_id) > 4 else "****"
        arn_parts = identity["Arn"].split("/")
        masked_arn = arn_parts[-1] if len(arn_parts) > 1 else identity["Arn"].split(":")[-1]
        self.progress.info(f"Authenticated as: {masked_arn}")
        self.progress.info(f"Account: {masked_account}")
        return masked_arn

    def describe_cluster(self) -> dict:
        self.progress.step(f"Checking EKS cluster {self.cluster_name}...")
        try:
            cluster = self.eks_client.describe_cluster(name=self.cluster_name)["cluster"]
        except botocore.exceptions.ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                raise ClusterNotFoundError(f"Cluster '{self.cluster_name}' not found in {self.region}")
            raise ClusterNotFoundError(f"Error describing cluster: {e}")

        if cluster.get("status") != "ACTIVE":
            self.progress.warning(f"Cluster status is {cluster.get('status')}, not ACTIVE")
        self.progress.info(f"Cluster version: {cluster.get('version')}")
        return cluster

    def update_kubeconfig(self, kubeconfig: Optional[str] = None) -> None:
        self.progress.step("Updating kubeconfig...")
        cmd = ["aws", "eks", "update-kubeconfig", "--name", self.cluster_name, "--region", self.region]
        if self.profile:
            cmd += ["--profile", self.profile]
        if kubeconfig:
            cmd += ["--kubeconfig", kubeconfig]
        try:
            subprocess.run(cmd, shell=False, check=True, capture_output=True, timeout=30)
        except subprocess.TimeoutExpired:
            raise KubectlNotAvailableError("Timeout updating kubeconfig")
        except subprocess.CalledProcessError as e:
            raise KubectlNotAvailableError(f"Failed to update kubeconfig: {e}")
        except FileNotFoundError:
            raise KubectlNotAvailableError("aws CLI not found in PATH")
        self.progress.info("kubeconfig updated")

    def connect(self, kubeconfig: Optional[str] = None) -> str:
        """Validate access, update kubeconfig and return the context name (cluster ARN)."""
        self.validate_aws_access()
        cluster = self.describe_cluster()
        self.update_kubeconfig(kubeconfig)
        return cluster["arn"]


# === SECTION 11: WIRING & CLI HANDLING ===


SETTING_DEFAULTS = {
    "kube_context": None,
    "kubeconfig": None,
    "agent_namespace": DEBUG_AGENT_NAMESPACE,
    "agent_selector": DEBUG_AGENT_LABEL,
    "agent_container": DEBUG_AGENT_CONTAINER,
    "exec_timeout": DEFAULT_EXEC_TIMEOUT,
    "node_cache_ttl": NODE_CACHE_TTL_SECONDS,
    "profile": None,
    "region": None,
    "cluster_name": None,
}


def build_diagnostics(settings: dict) -> NetworkDiagnostics:
    """Wire kubectl-backed collaborators into a NetworkDiagnostics instance."""
    kubectl = KubectlRunner(kube_context=settings.get("kube_context"), kubeconfig=settings.get("kubeconfig"))
    directory = KubectlClusterDirectory(kubectl)
    registry = NodeRegistry(
        directory.list_node_names,
        ttl_seconds=settings.get("node_cache_ttl") or NODE_CACHE_TTL_SECONDS,
    )
    locator = AgentLocator(
        directory,
        namespace=settings.get("agent_namespace") or DEBUG_AGENT_NAMESPACE,
        label_selector=settings.get("agent_selector") or DEBUG_AGENT_LABEL,
        container=settings.get("agent_container") or DEBUG_AGENT_CONTAINER,
    )
    exec_timeout = settings.get("exec_timeout") or DEFAULT_EXEC_TIMEOUT
    transport = KubectlExecTransport(kubectl, timeout=exec_timeout)
    return NetworkDiagnostics(registry, locator, transport, exec_timeout=exec_timeout)


def resolve_settings(args) -> dict:
    """Defaults < config file < environment < command line."""
    settings = dict(SETTING_DEFAULTS)
    config = ConfigLoader.load(getattr(args, "config", None))
    settings.update({k: v for k, v in config.items() if k in SETTING_DEFAULTS and v is not None})
    for key in SETTING_DEFAULTS:
        value = getattr(args, key, None)
        if value is not None:
            settings[key] = value

    for name, key in (
        ("kube_context", "kube_context"),
        ("kubeconfig", "kubeconfig"),
        ("namespace", "agent_namespace"),
        ("label_selector", "agent_selector"),
        ("resource_name", "agent_container"),
        ("profile", "profile"),
        ("region", "region"),
        ("cluster_name", "cluster_name"),
    ):
        if settings.get(key) is not None and not isinstance(settings[key], str):
            raise ConfigurationError(f"Setting '{key}' must be a string")
        validate_input(name, settings.get(key))

    for key, maximum in (("exec_timeout", 300), ("node_cache_ttl", 3600)):
        settings[key] = clamp_int(settings.get(key), 1, maximum, SETTING_DEFAULTS[key])
    return settings


def create_argument_parser():
    """Create argument parser with all CLI options"""
    parser = argparse.ArgumentParser(
        prog="k8s-node-netdiag",
        description="Kubernetes node network diagnostics through a per-node debug agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  k8s-node-netdiag nodes
  k8s-node-netdiag networking worker-1
  k8s-node-netdiag iptables worker-1 --table nat --chain POSTROUTING
  k8s-node-netdiag conntrack worker-1 --filter 10.42.0.0/16 --limit 100
  k8s-node-netdiag connectivity worker-1 10.43.0.10 --port 53
  k8s-node-netdiag curl https://grafana.example.com --from-node worker-2
  k8s-node-netdiag dns worker-1 kubernetes.default.svc.cluster.local --server 10.43.0.10
  k8s-node-netdiag sweep 1.1.1.1 --port 443

Environment Variables:
  NETDIAG_KUBE_CONTEXT       - kubectl context
  NETDIAG_KUBECONFIG         - kubeconfig path
  NETDIAG_AGENT_NAMESPACE    - Namespace of the debug agent DaemonSet
  NETDIAG_AGENT_SELECTOR     - Label selector of the debug agent pods
  NETDIAG_AGENT_CONTAINER    - Container to exec into
  NETDIAG_EXEC_TIMEOUT       - Remote command timeout in seconds
  NETDIAG_NODE_CACHE_TTL     - Node name cache lifetime in seconds
  NETDIAG_PROFILE / NETDIAG_REGION / NETDIAG_CLUSTER - EKS bootstrap
        """,
    )

    parser.add_argument("--config", help="Path to YAML/JSON config file")
    parser.add_argument("--kube-context", dest="kube_context", help="Kubernetes context name")
    parser.add_argument("--kubeconfig", help="Path to kubeconfig file")
    parser.add_argument("--agent-namespace", dest="agent_namespace", help=f"Debug agent namespace (default: {DEBUG_AGENT_NAMESPACE})")
    parser.add_argument("--agent-selector", dest="agent_selector", help=f"Debug agent label selector (default: {DEBUG_AGENT_LABEL})")
    parser.add_argument("--agent-container", dest="agent_container", help=f"Debug agent container (default: {DEBUG_AGENT_CONTAINER})")
    parser.add_argument("--exec-timeout", dest="exec_timeout", type=int, help=f"Remote command timeout in seconds (default: {DEFAULT_EXEC_TIMEOUT})")

    eks_group = parser.add_argument_group("EKS bootstrap")
    eks_group.add_argument("--profile", help="AWS profile from ~/.aws/credentials")
    eks_group.add_argument("--region", help="AWS region (e.g., eu-west-1, us-east-1)")
    eks_group.add_argument("--cluster-name", dest="cluster_name", help="EKS cluster name (updates kubeconfig, ignored with --kube-context)")

    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument("-v", "--verbose", action="store_true", help="Enable verbose/debug output")
    verbosity_group.add_argument("-q", "--quiet", action="store_true", help="Only print the JSON result")

    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("nodes", help="List valid node names")

    networking = subparsers.add_parser("networking", help="Interfaces, addresses, routes and rules")
    networking.add_argument("node")

    iptables = subparsers.add_parser("iptables", help="iptables rules for one table")
    iptables.add_argument("node")
    iptables.add_argument("--table", default="filter", choices=VALID_IPTABLES_TABLES)
    iptables.add_argument("--chain", help="Only this chain (e.g. FORWARD)")
    iptables.add_argument("--ipv6", action="store_true", help="Use ip6tables-save")

    conntrack = subparsers.add_parser("conntrack", help="Connection tracking entries")
    conntrack.add_argument("node")
    conntrack.add_argument("--filter", help="Source or destination IP/CIDR")
    conntrack.add_argument("--limit", type=int, default=CONNTRACK_DEFAULT_LIMIT, help=f"Max entries (1-{CONNTRACK_MAX_LIMIT})")

    connectivity = subparsers.add_parser("connectivity", help="Ping and optional TCP probe from a node")
    connectivity.add_argument("source_node")
    connectivity.add_argument("target")
    connectivity.add_argument("--port", type=int)

    curl = subparsers.add_parser("curl", help="Timed HTTP(S) probe from a node")
    curl.add_argument("url")
    curl.add_argument("--timeout", type=int, default=CURL_DEFAULT_TIMEOUT, help=f"Seconds (1-{CURL_MAX_TIMEOUT})")
    curl.add_argument("--from-node", dest="from_node")

    dns = subparsers.add_parser("dns", help="DNS query from a node")
    dns.add_argument("node")
    dns.add_argument("domain")
    dns.add_argument("--type", dest="record_type", default="A", choices=VALID_DNS_RECORD_TYPES)
    dns.add_argument("--server", help="DNS server to query")

    sweep = subparsers.add_parser("sweep", help="Ping and optional TCP probe from every node")
    sweep.add_argument("target")
    sweep.add_argument("--nodes", nargs="+", help="Limit to these nodes")
    sweep.add_argument("--port", type=int)

    return parser


def run_command(diagnostics: NetworkDiagnostics, args) -> dict:
    """Dispatch a parsed CLI command to its diagnostic operation."""
    commands = {
        "nodes": lambda: diagnostics.list_nodes(),
        "networking": lambda: diagnostics.get_node_networking(args.node),
        "iptables": lambda: diagnostics.get_iptables_rules(args.node, args.table, args.chain, args.ipv6),
        "conntrack": lambda: diagnostics.get_conntrack_entries(args.node, args.filter, args.limit),
        "connectivity": lambda: diagnostics.test_pod_connectivity(args.source_node, args.target, args.port),
        "curl": lambda: diagnostics.curl_ingress(args.url, args.timeout, args.from_node),
        "dns": lambda: diagnostics.test_dns_query(args.node, args.domain, args.record_type, args.server),
        "sweep": lambda: diagnostics.probe_nodes(args.target, args.nodes, args.port),
    }
    return commands[args.command]()


def get_exit_code(result: dict) -> int:
    """
    Determine exit code based on the result

    0 = diagnostic completed
    1 = the result is an error record
    """
    return 1 if result.get("error") else 0


# === SECTION 12: MAIN ENTRY POINT ===


def main(argv=None):
    """Main entry point"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    progress = ProgressTracker(verbose=args.verbose, quiet=args.quiet)

    try:
        settings = resolve_settings(args)

        if settings.get("cluster_name") and not settings.get("kube_context"):
            connector = EKSConnector(
                profile=settings.get("profile"),
                region=settings.get("region"),
                cluster_name=settings["cluster_name"],
                progress=progress,
            )
            settings["kube_context"] = connector.connect(kubeconfig=settings.get("kubeconfig"))
            validate_input("kube_context", settings["kube_context"])

        diagnostics = build_diagnostics(settings)
        result = run_command(diagnostics, args)

        print(json.dumps(result, indent=2, default=str))
        sys.exit(get_exit_code(result))

    except (ConfigurationError, ValidationError) as e:
        progress.error(f"Configuration error: {e}")
        sys.exit(2)
    except AWSAuthenticationError as e:
        progress.error(f"AWS authentication error: {e}")
        progress.error("Please check your AWS credentials and profile configuration")
        sys.exit(2)
    except ClusterNotFoundError as e:
        progress.error(f"Cluster error: {e}")
        sys.exit(2)
    except KubectlNotAvailableError as e:
        progress.error(f"kubectl error: {e}")
        progress.error("Please ensure kubectl and the AWS CLI are installed and in your PATH")
        sys.exit(2)
    except KeyboardInterrupt:
        progress.error("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        progress.error(f"Unexpected error: {e}")
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(2)


if __name__ == "__main__":
    main()
