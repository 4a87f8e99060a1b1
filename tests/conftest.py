"""Shared fixtures for node network diagnostics tests."""

import pytest
import sys
import os

# Add parent directory to path to import the main module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from k8s_node_netdiag import (  # noqa: E402
    AgentLocator,
    ExecResult,
    NetworkDiagnostics,
    NodeRegistry,
)


class FakeDirectory:
    """In-memory cluster: node names plus one agent pod per node."""

    def __init__(self, nodes, agents=None):
        self.nodes = list(nodes)
        self.agents = dict(agents if agents is not None else {n: f"netdiag-agent-{n}" for n in nodes})
        self.list_calls = 0
        self.pod_lookups = []

    def list_node_names(self):
        self.list_calls += 1
        return list(self.nodes)

    def find_ready_pod(self, namespace, label_selector, node_name):
        self.pod_lookups.append(node_name)
        name = self.agents.get(node_name)
        if not name:
            return None
        return {"metadata": {"name": name, "namespace": namespace}, "spec": {"nodeName": node_name}}


class FakeTransport:
    """Returns scripted ExecResults keyed by the command's first word."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def execute(self, agent, command, timeout=None):
        self.calls.append((agent, list(command), timeout))
        response = self.responses.get(command[0], ExecResult("", "", 0))
        if callable(response):
            response = response(command)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def directory():
    return FakeDirectory(["worker-1", "worker-2"])


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def diagnostics(directory, transport):
    registry = NodeRegistry(directory.list_node_names)
    locator = AgentLocator(directory)
    return NetworkDiagnostics(registry, locator, transport)


@pytest.fixture
def sample_iptables_save():
    """iptables-save -t filter output."""
    return """# Generated by iptables-save v1.8.7 on Mon Feb 20 10:30:00 2026
*filter
:INPUT ACCEPT [1234:567890]
:FORWARD DROP [0:0]
:OUTPUT ACCEPT [1000:200000]
:KUBE-FORWARD - [0:0]
-A INPUT -j KUBE-FIREWALL
-A FORWARD -m comment --comment "kubernetes forwarding rules" -j KUBE-FORWARD
-A FORWARD -s 10.42.0.0/16 -j ACCEPT
-A KUBE-FORWARD -m conntrack --ctstate INVALID -j DROP
COMMIT
# Completed on Mon Feb 20 10:30:00 2026
"""


@pytest.fixture
def sample_conntrack():
    """conntrack -L output."""
    return (
        "tcp      6 431999 ESTABLISHED src=10.42.0.15 dst=10.43.0.1 sport=54321 dport=443 "
        "src=10.0.1.12 dst=10.42.0.15 sport=6443 dport=54321 [ASSURED] mark=0 use=1\n"
        "udp      17 29 src=10.42.0.15 dst=10.43.0.10 sport=40000 dport=53 "
        "src=10.42.1.3 dst=10.42.0.15 sport=53 dport=40000 mark=0 use=1\n"
        "conntrack v1.4.6 (conntrack-tools): 2 flow entries have been shown.\n"
    )


@pytest.fixture
def sample_ping():
    """iputils ping output with replies."""
    return """PING 10.43.0.10 (10.43.0.10) 56(84) bytes of data.
64 bytes from 10.43.0.10: icmp_seq=1 ttl=64 time=0.412 ms
64 bytes from 10.43.0.10: icmp_seq=2 ttl=64 time=0.388 ms
64 bytes from 10.43.0.10: icmp_seq=3 ttl=64 time=0.401 ms

--- 10.43.0.10 ping statistics ---
3 packets transmitted, 3 received, 0% packet loss, time 2003ms
rtt min/avg/max/mdev = 0.388/0.400/0.412/0.010 ms
"""


@pytest.fixture
def sample_ping_unreachable():
    return """PING 10.99.0.1 (10.99.0.1) 56(84) bytes of data.

--- 10.99.0.1 ping statistics ---
3 packets transmitted, 0 received, 100% packet loss, time 2046ms
"""


@pytest.fixture
def sample_curl_output():
    return (
        '{"status_code": "200", "time_total": "0.123456", "time_namelookup": "0.004", '
        '"time_connect": "0.010", "time_appconnect": "0.050", "time_starttransfer": "0.120", '
        '"remote_ip": "10.0.1.50", "remote_port": "443", "size_download": "1534"}'
    )


@pytest.fixture
def sample_dig_output():
    return """;; Got answer:
;; ->>HEADER<<- opcode: QUERY, status: NOERROR, id: 12345
;; flags: qr aa rd; QUERY: 1, ANSWER: 1, AUTHORITY: 0, ADDITIONAL: 1

kubernetes.default.svc.cluster.local. 5 IN A	10.43.0.1
"""
