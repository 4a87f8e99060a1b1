"""Tests for the diagnostic operations."""

import json

import pytest
from k8s_node_netdiag import (
    AgentLocator,
    ExecResult,
    NetworkDiagnostics,
    NodeRegistry,
    TransportFailure,
    TransportTimeout,
)


def assert_error(result, code):
    assert result["error"] is True
    assert result["code"] == code
    assert result["message"]


class TestCommonBehaviour:
    def test_unknown_node_lists_valid_nodes_without_exec(self, diagnostics, transport):
        result = diagnostics.get_node_networking("worker-9")

        assert_error(result, "VALIDATION_ERROR")
        assert result["valid_nodes"] == ["worker-1", "worker-2"]
        assert "worker-1, worker-2" in result["message"]
        assert transport.calls == []

    def test_invalid_input_issues_no_calls(self, diagnostics, directory, transport):
        result = diagnostics.get_iptables_rules("worker-1", table="security")

        assert_error(result, "VALIDATION_ERROR")
        assert "filter, nat, mangle, raw" in result["message"]
        assert directory.list_calls == 0
        assert transport.calls == []

    def test_missing_agent_is_not_found(self, diagnostics, directory):
        directory.agents.pop("worker-2")

        assert_error(diagnostics.get_node_networking("worker-2"), "NOT_FOUND")

    def test_timeout_becomes_structured_error(self, diagnostics, transport):
        transport.responses["iptables-save"] = TransportTimeout("agent", 30)

        result = diagnostics.get_iptables_rules("worker-1")

        assert_error(result, "TIMEOUT")
        assert result["timeout_seconds"] == 30

    def test_transport_failure_becomes_structured_error(self, diagnostics, transport):
        transport.responses["conntrack"] = TransportFailure("pods/exec is forbidden")

        result = diagnostics.get_conntrack_entries("worker-1")

        assert_error(result, "TRANSPORT_ERROR")
        assert result["message"] == "pods/exec is forbidden"

    def test_unexpected_exec_error_is_transport_error(self, diagnostics, transport):
        transport.responses["iptables-save"] = ConnectionError("stream reset by apiserver")

        result = diagnostics.get_iptables_rules("worker-1")

        assert_error(result, "TRANSPORT_ERROR")
        assert result["message"] == "stream reset by apiserver"

    def test_missing_tool_is_remote_exit_error(self, diagnostics, transport):
        transport.responses["conntrack"] = ExecResult("", "sh: conntrack: not found", 127)

        result = diagnostics.get_conntrack_entries("worker-1")

        assert_error(result, "REMOTE_EXIT_ERROR")
        assert result["exit_code"] == 127
        assert result["stderr"] == "sh: conntrack: not found"

    def test_registry_listed_once_within_ttl(self, diagnostics, directory):
        diagnostics.list_nodes()
        diagnostics.get_node_networking("worker-1")
        diagnostics.get_iptables_rules("worker-2")

        assert directory.list_calls == 1


class TestListNodes:
    def test_list_nodes(self, diagnostics):
        assert diagnostics.list_nodes() == {"nodes": ["worker-1", "worker-2"], "count": 2}


class TestNodeNetworking:
    def test_sections(self, diagnostics, transport):
        def respond(command):
            script = command[2]
            separator = script.split("echo '")[1].split("'")[0]
            sections = ['[{"ifname": "lo"}]', '[{"ifname": "lo", "addr_info": []}]', '[{"dst": "default"}]', "[]"]
            return ExecResult(f"\n{separator}\n".join(sections), "", 0)

        transport.responses["sh"] = respond

        result = diagnostics.get_node_networking("worker-1")

        assert result["node"] == "worker-1"
        assert result["interfaces"] == [{"ifname": "lo"}]
        assert result["routes"] == [{"dst": "default"}]
        assert result["rules"] == []
        assert result["exit_code"] == 0
        assert "stderr" not in result
        assert transport.calls[0][1][:2] == ["sh", "-c"]

    def test_failure_without_output(self, diagnostics, transport):
        transport.responses["sh"] = ExecResult("", "RTNETLINK answers: Operation not permitted", 2)

        assert_error(diagnostics.get_node_networking("worker-1"), "REMOTE_EXIT_ERROR")

    def test_output_truncated(self, directory, transport):
        transport.responses["sh"] = ExecResult("x" * 200, "", 0)
        diagnostics = NetworkDiagnostics(
            NodeRegistry(directory.list_node_names), AgentLocator(directory), transport, max_output_bytes=64
        )

        result = diagnostics.get_node_networking("worker-1")

        assert result["output_truncated"] is True
        assert result["interfaces"] == "x" * 64

    def test_truncation_keeps_whole_lines(self, directory, transport, sample_conntrack):
        transport.responses["conntrack"] = ExecResult(sample_conntrack, "", 0)
        diagnostics = NetworkDiagnostics(
            NodeRegistry(directory.list_node_names), AgentLocator(directory), transport, max_output_bytes=200
        )

        result = diagnostics.get_conntrack_entries("worker-1")

        assert result["output_truncated"] is True
        assert result["total"] == 1
        assert result["entries"][0]["dport"] == "443"


class TestIptablesRules:
    def test_table_and_command(self, diagnostics, transport, sample_iptables_save):
        transport.responses["iptables-save"] = ExecResult(sample_iptables_save, "", 0)

        result = diagnostics.get_iptables_rules("worker-1")

        assert transport.calls[0][1] == ["iptables-save", "-t", "filter"]
        assert result["table"] == "filter"
        assert result["ip_version"] == 4
        assert result["rule_count"] == 4
        assert [c["name"] for c in result["chains"]] == ["INPUT", "FORWARD", "OUTPUT", "KUBE-FORWARD"]

    def test_chain_filter(self, diagnostics, transport, sample_iptables_save):
        transport.responses["iptables-save"] = ExecResult(sample_iptables_save, "", 0)

        result = diagnostics.get_iptables_rules("worker-1", chain="FORWARD")

        assert len(result["chains"]) == 1
        assert result["chains"][0]["policy"] == "DROP"
        assert len(result["chains"][0]["rules"]) == 2

    def test_ipv6(self, diagnostics, transport):
        transport.responses["ip6tables-save"] = ExecResult("*nat\n:PREROUTING ACCEPT [0:0]\nCOMMIT\n", "", 0)

        result = diagnostics.get_iptables_rules("worker-1", table="nat", ipv6=True)

        assert transport.calls[0][1] == ["ip6tables-save", "-t", "nat"]
        assert result["ip_version"] == 6
        assert result["table"] == "nat"

    def test_invalid_chain(self, diagnostics, transport):
        assert_error(diagnostics.get_iptables_rules("worker-1", chain="INPUT; id"), "VALIDATION_ERROR")
        assert transport.calls == []


class TestConntrackEntries:
    def test_unfiltered(self, diagnostics, transport, sample_conntrack):
        transport.responses["conntrack"] = ExecResult(
            sample_conntrack, "conntrack v1.4.6 (conntrack-tools): 2 flow entries have been shown.\n", 0
        )

        result = diagnostics.get_conntrack_entries("worker-1")

        assert transport.calls[0][1] == ["conntrack", "-L"]
        assert result["total"] == 2
        assert result["truncated"] is False
        assert "filter" not in result
        assert "stderr" not in result

    def test_source_match_no_fallback(self, diagnostics, transport, sample_conntrack):
        transport.responses["conntrack"] = ExecResult(sample_conntrack, "", 0)

        result = diagnostics.get_conntrack_entries("worker-1", filter="10.42.0.15")

        assert len(transport.calls) == 1
        assert transport.calls[0][1] == ["conntrack", "-L", "-s", "10.42.0.15"]
        assert result["fallback_used"] is False

    def test_destination_fallback_exactly_once(self, diagnostics, transport, sample_conntrack):
        def respond(command):
            if "-s" in command:
                return ExecResult("", "", 0)
            return ExecResult(sample_conntrack, "", 0)

        transport.responses["conntrack"] = respond

        result = diagnostics.get_conntrack_entries("worker-1", filter="10.43.0.1")

        assert [call[1] for call in transport.calls] == [
            ["conntrack", "-L", "-s", "10.43.0.1"],
            ["conntrack", "-L", "-d", "10.43.0.1"],
        ]
        assert result["fallback_used"] is True
        assert result["total"] == 2

    def test_no_match_anywhere(self, diagnostics, transport):
        transport.responses["conntrack"] = ExecResult("", "", 0)

        result = diagnostics.get_conntrack_entries("worker-1", filter="10.99.0.1")

        assert len(transport.calls) == 2
        assert result["entries"] == []
        assert result["fallback_used"] is True

    @pytest.mark.parametrize("limit,expected", [(1, 1), (0, 2), (500, 2), (-3, 1)])
    def test_limit_is_clamped(self, diagnostics, transport, sample_conntrack, limit, expected):
        transport.responses["conntrack"] = ExecResult(sample_conntrack, "", 0)

        result = diagnostics.get_conntrack_entries("worker-1", limit=limit)

        assert result["total"] == expected
        assert result["truncated"] is (expected < 2)

    def test_unsafe_filter(self, diagnostics, transport):
        assert_error(diagnostics.get_conntrack_entries("worker-1", filter="1.1.1.1 -D"), "VALIDATION_ERROR")
        assert transport.calls == []


class TestPodConnectivity:
    def test_reachable_with_port(self, diagnostics, transport, sample_ping):
        transport.responses["ping"] = ExecResult(sample_ping, "", 0)
        transport.responses["nc"] = ExecResult("", "", 0)

        result = diagnostics.test_pod_connectivity("worker-1", "10.43.0.10", port=53)

        assert transport.calls[0][1] == ["ping", "-c", "3", "-W", "2", "10.43.0.10"]
        assert transport.calls[1][1] == ["nc", "-z", "-w", "3", "10.43.0.10", "53"]
        assert result["ping"]["reachable"] is True
        assert result["ping"]["rtt_avg_ms"] == 0.4
        assert result["tcp_connect"] == {"port": 53, "open": True}

    def test_unreachable_is_not_an_error(self, diagnostics, transport, sample_ping_unreachable):
        transport.responses["ping"] = ExecResult(sample_ping_unreachable, "", 1)

        result = diagnostics.test_pod_connectivity("worker-1", "10.99.0.1")

        assert "error" not in result
        assert result["ping"]["reachable"] is False
        assert result["ping"]["loss_percent"] == 100.0
        assert result["ping"]["rtt_min_ms"] is None
        assert "tcp_connect" not in result

    def test_closed_port(self, diagnostics, transport, sample_ping):
        transport.responses["ping"] = ExecResult(sample_ping, "", 0)
        transport.responses["nc"] = ExecResult("", "nc: 10.43.0.10 (10.43.0.10:81): Connection refused", 1)

        result = diagnostics.test_pod_connectivity("worker-1", "10.43.0.10", port=81)

        assert result["tcp_connect"]["open"] is False
        assert "Connection refused" in result["tcp_connect"]["detail"]

    @pytest.mark.parametrize("port", [0, 70000])
    def test_port_out_of_range(self, diagnostics, transport, port):
        assert_error(diagnostics.test_pod_connectivity("worker-1", "10.43.0.10", port=port), "VALIDATION_ERROR")
        assert transport.calls == []

    def test_bad_target(self, diagnostics, transport):
        assert_error(diagnostics.test_pod_connectivity("worker-1", "-f 10.0.0.1"), "VALIDATION_ERROR")
        assert transport.calls == []


class TestCurlIngress:
    def test_default_node_and_timing(self, diagnostics, transport, sample_curl_output):
        transport.responses["curl"] = ExecResult(sample_curl_output, "", 0)

        result = diagnostics.curl_ingress("https://grafana.example.com")

        agent, command, timeout = transport.calls[0]
        assert agent.node_name == "worker-1"
        assert command[-3:] == ["--max-time", "10", "https://grafana.example.com"]
        assert timeout >= 30
        assert result["node"] == "worker-1"
        assert result["status_code"] == 200
        assert result["timing"]["total_seconds"] == 0.123456
        assert result["remote"] == {"ip": "10.0.1.50", "port": 443}

    def test_timeout_clamped(self, diagnostics, transport, sample_curl_output):
        transport.responses["curl"] = ExecResult(sample_curl_output, "", 0)

        diagnostics.curl_ingress("http://svc.local", timeout=300, from_node="worker-2")

        agent, command, _ = transport.calls[0]
        assert agent.node_name == "worker-2"
        assert command[command.index("--max-time") + 1] == "30"

    def test_write_out_is_json_template(self, diagnostics, transport, sample_curl_output):
        transport.responses["curl"] = ExecResult(sample_curl_output, "", 0)

        diagnostics.curl_ingress("http://svc.local")

        command = transport.calls[0][1]
        template = json.loads(command[command.index("-w") + 1])
        assert template["status_code"] == "%{http_code}"

    def test_unparseable_output(self, diagnostics, transport):
        transport.responses["curl"] = ExecResult("garbage", "curl: (6) Could not resolve host", 6)

        result = diagnostics.curl_ingress("http://nowhere.invalid")

        assert_error(result, "CURL_PARSE_ERROR")
        assert result["raw_output"] == "garbage"
        assert result["stderr"] == "curl: (6) Could not resolve host"

    def test_bad_scheme(self, diagnostics, transport):
        result = diagnostics.curl_ingress("ftp://example.com")

        assert_error(result, "VALIDATION_ERROR")
        assert "http or https" in result["message"]
        assert transport.calls == []

    def test_empty_cluster(self, diagnostics, directory, transport):
        directory.nodes = []

        assert_error(diagnostics.curl_ingress("http://svc.local"), "VALIDATION_ERROR")
        assert transport.calls == []


class TestDnsQuery:
    def test_resolved(self, diagnostics, transport, sample_dig_output):
        transport.responses["dig"] = ExecResult(sample_dig_output, "", 0)

        result = diagnostics.test_dns_query(
            "worker-1", "kubernetes.default.svc.cluster.local", server="10.43.0.10"
        )

        command = transport.calls[0][1]
        assert command[-3:] == ["A", "kubernetes.default.svc.cluster.local", "@10.43.0.10"]
        assert result["status"] == "NOERROR"
        assert result["resolved"] is True
        assert result["answers"][0]["data"] == "10.43.0.1"

    def test_lowercase_type_accepted(self, diagnostics, transport):
        transport.responses["dig"] = ExecResult(";; ->>HEADER<<- opcode: QUERY, status: NXDOMAIN, id: 1\n", "", 0)

        result = diagnostics.test_dns_query("worker-1", "missing.example.com", record_type="aaaa")

        assert result["type"] == "AAAA"
        assert result["resolved"] is False

    def test_invalid_type(self, diagnostics, transport):
        assert_error(diagnostics.test_dns_query("worker-1", "example.com", record_type="ANY"), "VALIDATION_ERROR")
        assert transport.calls == []


class TestProbeNodes:
    def test_all_nodes(self, diagnostics, transport, sample_ping):
        transport.responses["ping"] = ExecResult(sample_ping, "", 0)

        result = diagnostics.probe_nodes("10.43.0.10")

        assert list(result["results"]) == ["worker-1", "worker-2"]
        assert result["reachable_from"] == ["worker-1", "worker-2"]
        assert result["unreachable_from"] == []
        assert result["failed"] == []
        assert set(result["timings"]) == {"worker-1", "worker-2"}

    def test_failures_reported_per_node(self, diagnostics, directory, transport, sample_ping):
        directory.agents.pop("worker-2")
        transport.responses["ping"] = ExecResult(sample_ping, "", 0)

        result = diagnostics.probe_nodes("10.43.0.10")

        assert result["reachable_from"] == ["worker-1"]
        assert result["failed"] == ["worker-2"]
        assert result["results"]["worker-2"]["code"] == "NOT_FOUND"

    def test_lookup_error_on_one_node_does_not_abort(self, diagnostics, directory, transport, sample_ping):
        find_ready_pod = directory.find_ready_pod

        def flaky_lookup(namespace, label_selector, node_name):
            if node_name == "worker-2":
                raise ConnectionError("apiserver connection reset")
            return find_ready_pod(namespace, label_selector, node_name)

        directory.find_ready_pod = flaky_lookup
        transport.responses["ping"] = ExecResult(sample_ping, "", 0)

        result = diagnostics.probe_nodes("10.43.0.10")

        assert result["reachable_from"] == ["worker-1"]
        assert result["failed"] == ["worker-2"]
        assert result["results"]["worker-2"]["code"] == "TRANSPORT_ERROR"
        assert result["results"]["worker-2"]["message"] == "apiserver connection reset"

    def test_unknown_node_in_list(self, diagnostics, transport):
        assert_error(diagnostics.probe_nodes("10.43.0.10", nodes=["worker-7"]), "VALIDATION_ERROR")
        assert transport.calls == []
