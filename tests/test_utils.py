"""Unit tests for the pure helpers in tunnel_manager.cli.

Tests cover:
- Hostname normalization and validation
- Snapshot parsing (parse_snapshot)
- Ingress rule building (build_ingress_rules)
- Removal detection (compute_removed)
- Request payload builders and exit codes
"""

import pytest

from tunnel_manager.cli import (
    CATCH_ALL_SERVICE,
    EXIT_FATAL,
    EXIT_OK,
    EXIT_PARTIAL,
    CyclePhase,
    CycleResult,
    CycleStatus,
    InputInvalidError,
    PersistedState,
    Route,
    build_ingress_rules,
    compute_removed,
    dns_record_payload,
    exit_code_for,
    ingress_payload,
    is_valid_hostname,
    normalize_hostname,
    parse_snapshot,
    tunnel_dns_target,
)

# =============================================================================
# Hostnames
# =============================================================================


def test_normalize_hostname_lowercases_and_strips() -> None:
    assert normalize_hostname("  App.Example.COM. ") == "app.example.com"


def test_normalize_hostname_qualifies_bare_label() -> None:
    assert normalize_hostname("whoami", "example.com") == "whoami.example.com"


def test_normalize_hostname_leaves_fqdn_alone() -> None:
    assert normalize_hostname("app.other.org", "example.com") == "app.other.org"


@pytest.mark.parametrize(
    "hostname",
    ["app.example.com", "a.b.c.example.com", "x-1.example.com", "*.apps.example.com"],
)
def test_is_valid_hostname_accepts(hostname: str) -> None:
    assert is_valid_hostname(hostname) is True


@pytest.mark.parametrize(
    "hostname",
    [
        "",
        "localhost",
        "-app.example.com",
        "app-.example.com",
        "app..example.com",
        "under_score.example.com",
        "app.*.example.com",
        f"{'a' * 64}.example.com",
        ".".join(["abcdefgh"] * 30),
    ],
)
def test_is_valid_hostname_rejects(hostname: str) -> None:
    assert is_valid_hostname(hostname) is False


# =============================================================================
# Snapshot Parsing
# =============================================================================


def test_parse_snapshot_preserves_order() -> None:
    routes = parse_snapshot(
        [
            {"hostname": "b.example.com", "target": "http://b:80"},
            {"hostname": "a.example.com", "target": "http://a:80"},
        ]
    )

    assert routes == [Route("b.example.com", "http://b:80"), Route("a.example.com", "http://a:80")]


def test_parse_snapshot_accepts_service_key() -> None:
    """The docker-gen template writes "service" instead of "target"."""
    routes = parse_snapshot([{"hostname": "app.example.com", "service": "http://app:3000"}])

    assert routes == [Route("app.example.com", "http://app:3000")]


def test_parse_snapshot_accepts_routes_mapping() -> None:
    routes = parse_snapshot({"routes": [{"hostname": "app", "target": "svc:1"}]}, "example.com")

    assert routes == [Route("app.example.com", "svc:1")]


def test_parse_snapshot_duplicate_hostname_last_target_wins() -> None:
    routes = parse_snapshot(
        [
            {"hostname": "a.example.com", "target": "svc:1"},
            {"hostname": "b.example.com", "target": "svc:2"},
            {"hostname": "A.example.com", "target": "svc:3"},
        ]
    )

    assert routes == [Route("a.example.com", "svc:3"), Route("b.example.com", "svc:2")]


def test_parse_snapshot_empty_list_is_valid() -> None:
    assert parse_snapshot([]) == []


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "a.example.com",
        {"hostname": "a.example.com", "target": "svc:1"},
        ["a.example.com"],
        [{"target": "svc:1"}],
        [{"hostname": "", "target": "svc:1"}],
        [{"hostname": "a.example.com"}],
        [{"hostname": "a.example.com", "target": "  "}],
        [{"hostname": 42, "target": "svc:1"}],
        [{"hostname": "bad host.example.com", "target": "svc:1"}],
    ],
)
def test_parse_snapshot_rejects_malformed(raw) -> None:
    with pytest.raises(InputInvalidError):
        parse_snapshot(raw)


# =============================================================================
# Ingress Rules
# =============================================================================


def test_build_ingress_rules_appends_single_catch_all() -> None:
    routes = [Route("a.example.com", "svc:1"), Route("b.example.com", "svc:2")]

    rules = build_ingress_rules(routes)

    assert rules[-1] == {"service": CATCH_ALL_SERVICE}
    assert all("hostname" in rule for rule in rules[:-1])
    assert [r["hostname"] for r in rules[:-1]] == ["a.example.com", "b.example.com"]


def test_build_ingress_rules_without_routes_is_catch_all_only() -> None:
    assert build_ingress_rules([]) == [{"service": CATCH_ALL_SERVICE}]


def test_build_ingress_rules_keeps_route_using_404_target() -> None:
    """A route may point at http_status:404; it still carries its hostname."""
    rules = build_ingress_rules([Route("gone.example.com", CATCH_ALL_SERVICE)])

    assert rules == [
        {"hostname": "gone.example.com", "service": CATCH_ALL_SERVICE},
        {"service": CATCH_ALL_SERVICE},
    ]


# =============================================================================
# Removal Detection
# =============================================================================


def test_compute_removed_first_run_is_empty() -> None:
    assert compute_removed(None, [Route("a.example.com", "svc:1")]) == []


def test_compute_removed_detects_dropped_hostnames() -> None:
    previous = PersistedState(
        routes=[Route("a.example.com", "_"), Route("b.example.com", "_")]
    )

    assert compute_removed(previous, [Route("a.example.com", "_")]) == ["b.example.com"]


def test_compute_removed_ignores_target_changes() -> None:
    previous = PersistedState(routes=[Route("a.example.com", "svc:1")])

    assert compute_removed(previous, [Route("a.example.com", "svc:2")]) == []


def test_compute_removed_includes_pending_cleanup_once() -> None:
    previous = PersistedState(
        routes=[Route("b.example.com", "_"), Route("c.example.com", "_")],
        pending_cleanup=["p.example.com", "b.example.com", "c.example.com"],
    )

    removed = compute_removed(previous, [Route("c.example.com", "_")])

    assert removed == ["b.example.com", "p.example.com"]


def test_compute_removed_normalizes_previous_hostnames() -> None:
    previous = PersistedState(
        routes=[Route("App.Example.com.", "_"), Route("whoami", "_")],
        pending_cleanup=["Gone.example.com"],
    )
    routes = [Route("app.example.com", "_"), Route("whoami.example.com", "_")]

    assert compute_removed(previous, routes, "example.com") == ["gone.example.com"]


def test_compute_removed_does_not_mutate_inputs() -> None:
    previous = PersistedState(
        routes=[Route("b.example.com", "_")], pending_cleanup=["p.example.com"]
    )
    routes = [Route("a.example.com", "_")]

    compute_removed(previous, routes)

    assert previous.pending_cleanup == ["p.example.com"]
    assert routes == [Route("a.example.com", "_")]


# =============================================================================
# Payloads and Exit Codes
# =============================================================================


def test_dns_record_payload_is_proxied_cname() -> None:
    assert dns_record_payload("app.example.com", tunnel_dns_target("t-1")) == {
        "type": "CNAME",
        "name": "app.example.com",
        "content": "t-1.cfargotunnel.com",
        "ttl": 1,
        "proxied": True,
    }


def test_ingress_payload_wraps_rules() -> None:
    rules = [{"service": CATCH_ALL_SERVICE}]

    assert ingress_payload(rules) == {"config": {"ingress": rules}}


@pytest.mark.parametrize(
    "status, expected",
    [
        (CycleStatus.SUCCESS, EXIT_OK),
        (CycleStatus.SKIPPED, EXIT_OK),
        (CycleStatus.PARTIAL, EXIT_PARTIAL),
        (CycleStatus.FATAL, EXIT_FATAL),
    ],
)
def test_exit_code_for(status: CycleStatus, expected: int) -> None:
    assert exit_code_for(CycleResult(status=status, phase=CyclePhase.IDLE)) == expected
