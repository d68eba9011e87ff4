"""Shared test doubles for the reconciliation tests."""

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from tunnel_manager.cli import (
    ApiError,
    ControlPlane,
    DNSRecord,
    Tunnel,
    tunnel_dns_target,
)

# =============================================================================
# Fake Control Plane
# =============================================================================


class FakeControlPlane(ControlPlane):
    """In-memory Cloudflare account with call tracking and failure injection.

    Failures are keyed by (operation, key) where key is the hostname, tunnel
    name or tunnel ID the call is about, or "*" to fail every call of that
    operation.
    """

    def __init__(self, zones: Optional[Dict[str, str]] = None):
        self.zones = zones if zones is not None else {"example.com": "zone-1"}
        self.records: Dict[str, DNSRecord] = {}
        self.tunnels: List[Tunnel] = []
        self.tokens: Dict[str, str] = {}
        self.ingress: Dict[str, List[Dict[str, str]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self._next_id = 0

    @property
    def name(self) -> str:
        return "FakeCloudflare"

    # -- helpers --------------------------------------------------------------

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def _call(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        exc = self.failures.get((operation, key)) or self.failures.get((operation, "*"))
        if exc is not None:
            raise exc

    def calls_for(self, operation: str) -> List[str]:
        return [key for op, key in self.calls if op == operation]

    def mutation_calls(self) -> List[Tuple[str, str]]:
        mutating = {"create_dns_record", "update_dns_record", "delete_dns_record"}
        return [c for c in self.calls if c[0] in mutating]

    def add_tunnel(self, name: str, token: str = "") -> Tunnel:
        tunnel = Tunnel(id=self._new_id("tunnel"), name=name)
        self.tunnels.append(tunnel)
        self.tokens[tunnel.id] = token or f"token-{tunnel.id}"
        return tunnel

    def add_record(self, name: str, content: str, type: str = "CNAME") -> DNSRecord:
        record = DNSRecord(
            id=self._new_id("rec"), name=name, type=type, content=content, proxied=True
        )
        self.records[record.id] = record
        return record

    def add_tunnel_record(self, name: str, tunnel: Tunnel) -> DNSRecord:
        return self.add_record(name, tunnel_dns_target(tunnel.id))

    def record_names(self) -> List[str]:
        return sorted(r.name for r in self.records.values())

    # -- ControlPlane ---------------------------------------------------------

    def find_zone_id(self, domain: str) -> str:
        self._call("find_zone_id", domain)
        if domain not in self.zones:
            raise ApiError(f"Could not find zone for domain: {domain}")
        return self.zones[domain]

    def list_dns_records(self, zone_id: str, name: str) -> List[DNSRecord]:
        self._call("list_dns_records", name)
        return [r for r in self.records.values() if r.name.lower() == name.lower()]

    def create_dns_record(self, zone_id: str, hostname: str, content: str) -> DNSRecord:
        self._call("create_dns_record", hostname)
        record = DNSRecord(
            id=self._new_id("rec"), name=hostname, type="CNAME", content=content, proxied=True
        )
        self.records[record.id] = record
        return record

    def update_dns_record(
        self, zone_id: str, record_id: str, hostname: str, content: str
    ) -> DNSRecord:
        self._call("update_dns_record", hostname)
        record = DNSRecord(
            id=record_id, name=hostname, type="CNAME", content=content, proxied=True
        )
        self.records[record_id] = record
        return record

    def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        record = self.records.get(record_id)
        self._call("delete_dns_record", record.name if record else record_id)
        self.records.pop(record_id, None)

    def list_tunnels(self, name: str) -> List[Tunnel]:
        self._call("list_tunnels", name)
        return [t for t in self.tunnels if t.name == name]

    def create_tunnel(self, name: str) -> Tunnel:
        self._call("create_tunnel", name)
        return self.add_tunnel(name)

    def get_tunnel_token(self, tunnel_id: str) -> str:
        self._call("get_tunnel_token", tunnel_id)
        return self.tokens[tunnel_id]

    def replace_ingress_config(self, tunnel_id: str, rules: List[Dict[str, str]]) -> None:
        self._call("replace_ingress_config", tunnel_id)
        self.ingress[tunnel_id] = list(rules)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def token_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "tunnel-token"
