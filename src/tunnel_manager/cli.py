#!/usr/bin/env python3
"""tunnel-manager - Cloudflare Tunnel ingress reconciliation

Keeps the public hostnames of a remotely-managed Cloudflare Tunnel in sync with
the containers running on a host. An external producer (e.g. docker-gen) writes
a desired-state snapshot of {hostname, target} routes; every cycle this tool
upserts a proxied CNAME per route, replaces the tunnel ingress configuration,
removes DNS records for routes that disappeared, and then commits the snapshot
as the new persisted state.

The tunnel agent (cloudflared) is not started or supervised here. It reads the
tunnel token written to TUNNEL_TOKEN_PATH.

Environment variables:

    Cloudflare:
        CLOUDFLARE_API_TOKEN       Scoped API token (Zone Read, DNS Write, Tunnel Write)
        CLOUDFLARE_ACCOUNT_ID      Account owning the tunnel
        CLOUDFLARE_TUNNEL_NAME     Tunnel name, looked up before being created
        CLOUDFLARE_DEFAULT_DOMAIN  Zone name; bare hostnames such as "whoami" are
                                   qualified with it ("whoami.example.com")
        CLOUDFLARE_ZONE_ID         Zone ID (optional, looked up from the domain if unset)
        CLOUDFLARE_API_BASE        API base URL (default: https://api.cloudflare.com/client/v4)

    Files:
        SNAPSHOT_PATH              Desired-state snapshot written by the producer
                                   (default: /config/tunnel-config.json)
                                   Either a single JSON/YAML file or a directory of
                                   *.json / *.yaml fragments merged in filename order.
                                   Example:
                                     [{"hostname": "whoami.example.com",
                                       "service": "http://whoami:80"}]
        STATE_PATH                 Last successfully applied state
                                   (default: /config/tunnel-state.json)
        TUNNEL_TOKEN_PATH          Where the tunnel token is written for cloudflared
                                   (default: /config/tunnel-token)

    Runtime:
        SYNC_MODE                  "once" or "watch" (polling loop) (default: once)
        POLL_INTERVAL_SECONDS      Snapshot change check interval in watch mode (default: 10)
        RESYNC_INTERVAL_SECONDS    Full resync interval in watch mode (default: 300)
        RETRY_INTERVAL_SECONDS     Delay before retrying a failed cycle in watch mode (default: 60)
        REQUEST_TIMEOUT_SECONDS    Timeout for every Cloudflare API call (default: 10)
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)

Exit status (once mode):
    0   cycle succeeded, or there was no snapshot to apply
    1   fatal error (bad configuration, invalid snapshot, auth failure, ingress push failed)
    2   partial failure (some DNS records could not be updated or removed)
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
import yaml

# =============================================================================
# File Watching Utilities
# =============================================================================

SNAPSHOT_SUFFIXES = (".json", ".yaml", ".yml")


def get_file_mtime(path: str) -> float:
    """Get modification time of a file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(path) if os.path.exists(path) else 0.0
    except (OSError, IOError):
        return 0.0


def find_snapshot_files(snapshot_path: str) -> List[str]:
    """Find all snapshot fragments in a directory or return a single file.

    Args:
        snapshot_path: Path to a snapshot file or a directory of fragments

    Returns:
        List of snapshot file paths in merge order (excluding .template files)
    """
    path = Path(snapshot_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        return [
            str(f)
            for f in sorted(path.iterdir())
            if f.is_file() and f.suffix in SNAPSHOT_SUFFIXES and not f.name.endswith(".template")
        ]

    # Producer hasn't written anything yet
    return []


def get_files_mtimes(files: List[str]) -> Dict[str, float]:
    """Get modification times for all snapshot files."""
    return {f: get_file_mtime(f) for f in files}


# =============================================================================
# Configuration
# =============================================================================

# Cloudflare configuration
CLOUDFLARE_API_TOKEN = os.getenv("CLOUDFLARE_API_TOKEN", "")
CLOUDFLARE_ACCOUNT_ID = os.getenv("CLOUDFLARE_ACCOUNT_ID", "")
CLOUDFLARE_TUNNEL_NAME = os.getenv("CLOUDFLARE_TUNNEL_NAME", "").strip()
CLOUDFLARE_DEFAULT_DOMAIN = os.getenv("CLOUDFLARE_DEFAULT_DOMAIN", "").lower().strip()
CLOUDFLARE_ZONE_ID = os.getenv("CLOUDFLARE_ZONE_ID", "").strip()
CLOUDFLARE_API_BASE = os.getenv("CLOUDFLARE_API_BASE", "https://api.cloudflare.com/client/v4")

# File locations
SNAPSHOT_PATH = os.getenv("SNAPSHOT_PATH", "/config/tunnel-config.json")
STATE_PATH = os.getenv("STATE_PATH", "/config/tunnel-state.json")
TUNNEL_TOKEN_PATH = os.getenv("TUNNEL_TOKEN_PATH", "/config/tunnel-token")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "once")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "10"))
RESYNC_INTERVAL_SECONDS = int(os.getenv("RESYNC_INTERVAL_SECONDS", "300"))
RETRY_INTERVAL_SECONDS = int(os.getenv("RETRY_INTERVAL_SECONDS", "60"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Cloudflare constants
TUNNEL_DNS_SUFFIX = "cfargotunnel.com"
CATCH_ALL_SERVICE = "http_status:404"
AUTH_ERROR_CODES = {9103, 9106, 9109, 10000}

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class TunnelManagerError(Exception):
    """Base class for all tunnel-manager errors."""


class InputInvalidError(TunnelManagerError):
    """The desired-state snapshot could not be parsed or has malformed routes."""


class ControlPlaneError(TunnelManagerError):
    """A Cloudflare API call failed."""

    def __init__(self, message: str, *, method: str = "", path: str = ""):
        super().__init__(message)
        self.method = method
        self.path = path


class TransportError(ControlPlaneError):
    """Network, TLS, timeout or unreadable response."""


class AuthError(ControlPlaneError):
    """The API token was rejected. Further calls are expected to fail the same way."""


class ApiError(ControlPlaneError):
    """The API answered but reported failure in its response envelope."""

    def __init__(
        self,
        message: str,
        *,
        method: str = "",
        path: str = "",
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, method=method, path=path)
        self.errors = errors or []


# =============================================================================
# Enums
# =============================================================================


class CyclePhase(Enum):
    """Phases of one reconciliation cycle.

    A cycle walks VALIDATING -> RESOLVING_IDENTITY -> APPLYING_ROUTES ->
    PUSHING_INGRESS -> CLEANING -> COMMITTING and returns to IDLE, or ends in
    FAILED without committing state.
    """

    IDLE = "idle"
    VALIDATING = "validating"
    RESOLVING_IDENTITY = "resolving_identity"
    APPLYING_ROUTES = "applying_routes"
    PUSHING_INGRESS = "pushing_ingress"
    CLEANING = "cleaning"
    COMMITTING = "committing"
    FAILED = "failed"


class CycleStatus(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FATAL = "fatal"
    SKIPPED = "skipped"


class UpsertOutcome(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Route:
    """A public hostname served by the tunnel."""

    hostname: str
    target: str

    def to_dict(self) -> Dict[str, str]:
        return {"hostname": self.hostname, "target": self.target}


@dataclass(frozen=True)
class PersistedState:
    """Routes in effect after the last committed cycle."""

    routes: List[Route] = field(default_factory=list)
    pending_cleanup: List[str] = field(default_factory=list)

    def hostnames(self) -> List[str]:
        return [r.hostname for r in self.routes]


@dataclass(frozen=True)
class DNSRecord:
    """Represents a DNS record as returned by the Cloudflare API."""

    id: str
    name: str
    type: str
    content: str
    proxied: bool = False
    ttl: int = 1


@dataclass(frozen=True)
class Tunnel:
    id: str
    name: str


@dataclass(frozen=True)
class TunnelIdentity:
    """The tunnel being reconciled and where its token was written."""

    id: str
    name: str
    credential_path: str

    @property
    def dns_target(self) -> str:
        return tunnel_dns_target(self.id)


@dataclass
class CycleCounts:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    deleted: int = 0
    delete_failed: int = 0


@dataclass
class CycleResult:
    """Outcome of one reconciliation cycle."""

    status: CycleStatus
    phase: CyclePhase
    counts: CycleCounts = field(default_factory=CycleCounts)
    error: str = ""
    committed: bool = False
    pending_cleanup: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (CycleStatus.SUCCESS, CycleStatus.SKIPPED)


# =============================================================================
# Utility Functions
# =============================================================================

HOSTNAME_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def tunnel_dns_target(tunnel_id: str) -> str:
    return f"{tunnel_id}.{TUNNEL_DNS_SUFFIX}"


def normalize_hostname(hostname: str, default_domain: str = "") -> str:
    """Lower-case a hostname and qualify bare labels with the default domain."""
    name = hostname.strip().lower().rstrip(".")
    if name and "." not in name and default_domain:
        name = f"{name}.{default_domain.lower().rstrip('.')}"
    return name


def is_valid_hostname(hostname: str) -> bool:
    """Check that a hostname is a fully-qualified DNS name.

    A leading "*." wildcard label is accepted.
    """
    if not hostname or len(hostname) > 253:
        return False
    labels = hostname.split(".")
    if labels[0] == "*":
        labels = labels[1:]
    if len(labels) < 2:
        return False
    return all(HOSTNAME_LABEL_RE.match(label) for label in labels)


def _route_from_entry(entry: Any, default_domain: str) -> Route:
    if not isinstance(entry, dict):
        raise InputInvalidError(f"Route entry must be a mapping, got {type(entry).__name__}")

    hostname = entry.get("hostname")
    target = entry.get("target", entry.get("service"))
    if not isinstance(hostname, str) or not hostname.strip():
        raise InputInvalidError(f"Route entry has no hostname: {entry}")
    if not isinstance(target, str) or not target.strip():
        raise InputInvalidError(f"Route '{hostname}' has no target")

    name = normalize_hostname(hostname, default_domain)
    if not is_valid_hostname(name):
        raise InputInvalidError(f"Invalid hostname: '{hostname}'")
    return Route(hostname=name, target=target.strip())


def parse_snapshot(raw: Any, default_domain: str = "") -> List[Route]:
    """Validate a raw snapshot into an ordered list of routes.

    Accepts a list of {hostname, target} mappings ("service" is accepted in
    place of "target") or a mapping with a "routes" list. When a hostname
    appears more than once the last target wins and the route keeps the
    position of its first occurrence.

    Raises:
        InputInvalidError: If the snapshot or any entry is malformed.
    """
    if isinstance(raw, dict):
        raw = raw.get("routes")
    if not isinstance(raw, list):
        raise InputInvalidError(
            f"Snapshot must be a list of routes, got {type(raw).__name__}"
        )

    routes: Dict[str, Route] = {}
    for entry in raw:
        route = _route_from_entry(entry, default_domain)
        previous = routes.get(route.hostname)
        if previous is not None and previous.target != route.target:
            logger.warning(
                f"Duplicate hostname '{route.hostname}' in snapshot: "
                f"'{previous.target}' replaced by '{route.target}'"
            )
        routes[route.hostname] = route
    return list(routes.values())


def _load_snapshot_file(path: str) -> Any:
    text = Path(path).read_text("utf-8")
    if path.endswith((".yaml", ".yml")):
        return yaml.safe_load(text)
    return json.loads(text)


def load_snapshot(snapshot_path: str) -> Optional[List[Any]]:
    """Read the raw snapshot entries written by the producer.

    Returns:
        The concatenated entries of all snapshot files, or None when the
        producer hasn't written a snapshot yet.

    Raises:
        InputInvalidError: If a snapshot file can't be read or parsed.
    """
    files = find_snapshot_files(snapshot_path)
    if not files:
        return None

    entries: List[Any] = []
    for snapshot_file in files:
        try:
            data = _load_snapshot_file(snapshot_file)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise InputInvalidError(f"Failed to parse snapshot {snapshot_file}: {e}") from e

        if isinstance(data, dict):
            data = data.get("routes")
        if data is None:
            # No routes must be written explicitly as []
            raise InputInvalidError(f"Snapshot {snapshot_file} has no routes list")
        if not isinstance(data, list):
            raise InputInvalidError(
                f"Snapshot {snapshot_file} must contain a list of routes, "
                f"got {type(data).__name__}"
            )
        entries.extend(data)
    return entries


def build_ingress_rules(routes: List[Route]) -> List[Dict[str, str]]:
    """Build the tunnel ingress rule set: one rule per route, then the catch-all."""
    rules = [{"hostname": r.hostname, "service": r.target} for r in routes]
    rules.append({"service": CATCH_ALL_SERVICE})
    return rules


def compute_removed(
    previous: Optional[PersistedState], routes: List[Route], default_domain: str = ""
) -> List[str]:
    """Hostnames that were applied before but are no longer desired.

    Hostnames whose cleanup failed in an earlier cycle are carried in
    pending_cleanup and are included until they are desired again or deleted.
    Previous hostnames are normalized the same way snapshot hostnames are.
    """
    if previous is None:
        return []

    current = {normalize_hostname(r.hostname, default_domain) for r in routes}
    removed: List[str] = []
    for name in previous.hostnames() + list(previous.pending_cleanup):
        hostname = normalize_hostname(name, default_domain)
        if hostname not in current and hostname not in removed:
            removed.append(hostname)
    return removed


def dns_record_payload(hostname: str, content: str) -> Dict[str, Any]:
    return {
        "type": "CNAME",
        "name": hostname,
        "content": content,
        "ttl": 1,
        "proxied": True,
    }


def ingress_payload(rules: List[Dict[str, str]]) -> Dict[str, Any]:
    return {"config": {"ingress": rules}}


def _format_api_errors(errors: List[Any]) -> str:
    messages = []
    for e in errors:
        if isinstance(e, dict):
            code = e.get("code")
            message = e.get("message") or "Unknown error"
            messages.append(f"[{code}] {message}" if code is not None else message)
        else:
            messages.append(str(e))
    return "; ".join(messages) or "Unknown error"


# =============================================================================
# Control Plane Interface and Implementations
# =============================================================================


class ControlPlane(ABC):
    """Abstract base class for the DNS and tunnel configuration APIs.

    Every method either returns the parsed result or raises a
    ControlPlaneError subclass. Nothing is retried here.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the control plane name for logging."""
        pass

    @abstractmethod
    def find_zone_id(self, domain: str) -> str:
        """Look up a zone ID by zone name."""
        pass

    @abstractmethod
    def list_dns_records(self, zone_id: str, name: str) -> List[DNSRecord]:
        """List DNS records in a zone with the given name."""
        pass

    @abstractmethod
    def create_dns_record(self, zone_id: str, hostname: str, content: str) -> DNSRecord:
        """Create a proxied CNAME record."""
        pass

    @abstractmethod
    def update_dns_record(
        self, zone_id: str, record_id: str, hostname: str, content: str
    ) -> DNSRecord:
        """Overwrite an existing record with a proxied CNAME."""
        pass

    @abstractmethod
    def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        """Delete a DNS record by ID."""
        pass

    @abstractmethod
    def list_tunnels(self, name: str) -> List[Tunnel]:
        """List non-deleted tunnels with exactly this name."""
        pass

    @abstractmethod
    def create_tunnel(self, name: str) -> Tunnel:
        """Create a remotely-managed tunnel."""
        pass

    @abstractmethod
    def get_tunnel_token(self, tunnel_id: str) -> str:
        """Fetch the token cloudflared uses to run the tunnel."""
        pass

    @abstractmethod
    def replace_ingress_config(self, tunnel_id: str, rules: List[Dict[str, str]]) -> None:
        """Replace the tunnel's ingress rules in a single call."""
        pass

    def upsert_dns_record(self, zone_id: str, hostname: str, content: str) -> UpsertOutcome:
        """Create or update the CNAME for a hostname.

        The first record returned for the name is the one that gets updated.
        No write is made when it already matches.
        """
        records = self.list_dns_records(zone_id, hostname)
        if not records:
            logger.info(f"Creating DNS record {hostname} -> {content}")
            self.create_dns_record(zone_id, hostname, content)
            return UpsertOutcome.CREATED

        if len(records) > 1:
            logger.warning(
                f"Found {len(records)} DNS records for {hostname}, using {records[0].id}"
            )
        existing = records[0]
        if existing.type == "CNAME" and existing.content == content and existing.proxied:
            logger.debug(f"DNS record for {hostname} already up to date")
            return UpsertOutcome.UNCHANGED

        logger.info(
            f"Updating DNS record {existing.id}: {hostname} "
            f"{existing.type} {existing.content} -> CNAME {content}"
        )
        self.update_dns_record(zone_id, existing.id, hostname, content)
        return UpsertOutcome.UPDATED

    def remove_dns_record(self, zone_id: str, hostname: str, content: str) -> bool:
        """Delete the CNAME for a hostname if it still points at this tunnel.

        Returns:
            True if a record was deleted, False if there was nothing to delete
        """
        records = self.list_dns_records(zone_id, hostname)
        if not records:
            logger.info(f"No DNS record for {hostname}, nothing to delete")
            return False

        record = records[0]
        if record.type != "CNAME" or record.content != content:
            logger.warning(
                f"DNS record for {hostname} ({record.type} {record.content}) "
                f"does not point at this tunnel, leaving it in place"
            )
            return False

        self.delete_dns_record(zone_id, record.id)
        logger.info(f"Deleted DNS record: {hostname}")
        return True


class CloudflareClient(ControlPlane):
    """Cloudflare v4 API client for DNS records and remotely-managed tunnels."""

    def __init__(
        self,
        api_token: str,
        account_id: str,
        *,
        base_url: str = "https://api.cloudflare.com/client/v4",
        timeout_seconds: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._account_id = account_id
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Issue an API call and return the envelope's "result".

        Raises:
            TransportError: On connection errors, timeouts or non-JSON bodies.
            AuthError: If the token is rejected.
            ApiError: If the envelope reports success=false.
        """
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(
                method, url, params=params, json=payload, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}", method=method, path=path) from e

        if response.status_code in (401, 403):
            raise AuthError(
                f"{method} {path} rejected the API token (HTTP {response.status_code})",
                method=method,
                path=path,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                f"{method} {path} returned a non-JSON response (HTTP {response.status_code})",
                method=method,
                path=path,
            ) from e

        if not isinstance(body, dict) or "success" not in body:
            raise TransportError(
                f"{method} {path} returned an unexpected response (HTTP {response.status_code})",
                method=method,
                path=path,
            )

        if not body.get("success"):
            errors = body.get("errors") or []
            codes = {e.get("code") for e in errors if isinstance(e, dict)}
            message = f"{method} {path} failed: {_format_api_errors(errors)}"
            if codes & AUTH_ERROR_CODES:
                raise AuthError(message, method=method, path=path)
            raise ApiError(message, method=method, path=path, errors=errors)

        return body.get("result")

    def _tunnel_path(self, suffix: str = "") -> str:
        return f"/accounts/{self._account_id}/cfd_tunnel{suffix}"

    def find_zone_id(self, domain: str) -> str:
        result = self._request("GET", "/zones", params={"name": domain})
        for zone in result or []:
            if isinstance(zone, dict) and zone.get("id"):
                return str(zone["id"])
        raise ApiError(f"Could not find zone for domain: {domain}", method="GET", path="/zones")

    def list_dns_records(self, zone_id: str, name: str) -> List[DNSRecord]:
        result = self._request("GET", f"/zones/{zone_id}/dns_records", params={"name": name})
        records = []
        for r in result or []:
            if not isinstance(r, dict) or not r.get("id") or not isinstance(r.get("name"), str):
                logger.warning(f"Skipping malformed DNS record: {r}")
                continue
            records.append(_dns_record_from_api(r))
        return records

    def create_dns_record(self, zone_id: str, hostname: str, content: str) -> DNSRecord:
        result = self._request(
            "POST",
            f"/zones/{zone_id}/dns_records",
            payload=dns_record_payload(hostname, content),
        )
        return _dns_record_from_api(result or {})

    def update_dns_record(
        self, zone_id: str, record_id: str, hostname: str, content: str
    ) -> DNSRecord:
        result = self._request(
            "PUT",
            f"/zones/{zone_id}/dns_records/{record_id}",
            payload=dns_record_payload(hostname, content),
        )
        return _dns_record_from_api(result or {})

    def delete_dns_record(self, zone_id: str, record_id: str) -> None:
        self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")

    def list_tunnels(self, name: str) -> List[Tunnel]:
        result = self._request(
            "GET", self._tunnel_path(), params={"is_deleted": "false", "name": name}
        )
        return [
            Tunnel(id=str(t["id"]), name=t["name"])
            for t in result or []
            if isinstance(t, dict) and t.get("id") and t.get("name") == name
        ]

    def create_tunnel(self, name: str) -> Tunnel:
        path = self._tunnel_path()
        result = self._request("POST", path, payload={"name": name, "config_src": "cloudflare"})
        if not isinstance(result, dict) or not result.get("id"):
            raise ApiError(f"Tunnel create returned no ID: {result}", method="POST", path=path)
        return Tunnel(id=str(result["id"]), name=str(result.get("name") or name))

    def get_tunnel_token(self, tunnel_id: str) -> str:
        path = self._tunnel_path(f"/{tunnel_id}/token")
        result = self._request("GET", path)
        if not isinstance(result, str) or not result:
            raise ApiError(f"No token returned for tunnel {tunnel_id}", method="GET", path=path)
        return result

    def replace_ingress_config(self, tunnel_id: str, rules: List[Dict[str, str]]) -> None:
        self._request(
            "PUT",
            self._tunnel_path(f"/{tunnel_id}/configurations"),
            payload=ingress_payload(rules),
        )


def _dns_record_from_api(r: Dict[str, Any]) -> DNSRecord:
    return DNSRecord(
        id=str(r.get("id") or ""),
        name=str(r.get("name") or ""),
        type=str(r.get("type") or ""),
        content=str(r.get("content") or ""),
        proxied=bool(r.get("proxied", False)),
        ttl=int(r.get("ttl") or 1),
    )


# =============================================================================
# Tunnel Identity
# =============================================================================


def write_credential(path: str, token: str) -> None:
    """Atomically write the tunnel token, readable only by the owner."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(target.name + ".tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        # O_CREAT keeps the mode of a leftover tmp file
        os.fchmod(f.fileno(), 0o600)
        f.write(token + "\n")
    tmp_path.replace(target)


def credential_present(path: str) -> bool:
    try:
        return bool(Path(path).read_text("utf-8").strip())
    except OSError:
        return False


class TunnelIdentityResolver:
    """Finds the tunnel by name or creates it, and keeps its token on disk."""

    def __init__(self, control_plane: ControlPlane, tunnel_name: str, credential_path: str):
        self.control_plane = control_plane
        self.tunnel_name = tunnel_name
        self.credential_path = credential_path
        self._identity: Optional[TunnelIdentity] = None

    def invalidate(self) -> None:
        """Forget the cached tunnel so the next resolve looks it up again."""
        self._identity = None

    def resolve(self) -> TunnelIdentity:
        created = False
        if self._identity is None:
            tunnel, created = self._find_or_create()
            self._identity = TunnelIdentity(
                id=tunnel.id, name=tunnel.name, credential_path=self.credential_path
            )

        if created or not credential_present(self.credential_path):
            logger.info(f"Fetching tunnel token for: {self._identity.id}")
            token = self.control_plane.get_tunnel_token(self._identity.id)
            write_credential(self.credential_path, token)
            logger.info(f"Tunnel token saved to {self.credential_path}")

        return self._identity

    def _find_or_create(self) -> Tuple[Tunnel, bool]:
        logger.info(f"Checking for existing tunnel: {self.tunnel_name}")
        tunnels = self.control_plane.list_tunnels(self.tunnel_name)
        if tunnels:
            if len(tunnels) > 1:
                logger.warning(
                    f"Found {len(tunnels)} tunnels named '{self.tunnel_name}', "
                    f"using {tunnels[0].id}"
                )
            logger.info(f"Found existing tunnel: {tunnels[0].id}")
            return tunnels[0], False

        logger.info(f"Creating new tunnel: {self.tunnel_name} (remotely-managed)")
        tunnel = self.control_plane.create_tunnel(self.tunnel_name)
        logger.info(f"Created tunnel: {tunnel.id}")
        return tunnel, True


# =============================================================================
# State Management
# =============================================================================


class StateStore(ABC):
    """Single-slot storage for the last committed state."""

    @abstractmethod
    def load(self) -> Optional[PersistedState]:
        """Return the stored state, or None if there is none (or it's unreadable)."""
        pass

    @abstractmethod
    def save(self, state: PersistedState) -> None:
        """Replace the stored state."""
        pass


class MemoryStateStore(StateStore):
    def __init__(self, state: Optional[PersistedState] = None):
        self.state = state
        self.save_count = 0

    def load(self) -> Optional[PersistedState]:
        return self.state

    def save(self, state: PersistedState) -> None:
        self.save_count += 1
        self.state = state


def _state_routes(entries: Any) -> List[Route]:
    if not isinstance(entries, list):
        raise ValueError(f"routes must be a list, got {type(entries).__name__}")
    routes = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"route must be a mapping: {entry}")
        hostname = entry.get("hostname")
        target = entry.get("target", entry.get("service"))
        if not isinstance(hostname, str) or not isinstance(target, str):
            raise ValueError(f"malformed route: {entry}")
        routes.append(Route(hostname=normalize_hostname(hostname), target=target))
    return routes


def state_from_dict(data: Any) -> PersistedState:
    """Decode a persisted state document.

    A bare list, as written by older versions of the update script, is read
    as the route list.
    """
    if isinstance(data, list):
        return PersistedState(routes=_state_routes(data))
    if not isinstance(data, dict):
        raise ValueError(f"state must be a mapping, got {type(data).__name__}")

    pending = data.get("pending_cleanup") or []
    if not isinstance(pending, list) or not all(isinstance(h, str) for h in pending):
        raise ValueError("pending_cleanup must be a list of hostnames")
    pending = [normalize_hostname(h) for h in pending]
    return PersistedState(routes=_state_routes(data.get("routes", [])), pending_cleanup=pending)


def state_to_dict(state: PersistedState) -> Dict[str, Any]:
    return {
        "version": 1,
        "routes": [r.to_dict() for r in state.routes],
        "pending_cleanup": list(state.pending_cleanup),
    }


class FileStateStore(StateStore):
    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Optional[PersistedState]:
        if not self.path.exists():
            return None
        try:
            return state_from_dict(json.loads(self.path.read_text("utf-8")))
        except Exception as e:
            logger.warning(f"Failed to load state file {self.path}, treating as first run: {e}")
            return None

    def save(self, state: PersistedState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(state_to_dict(state), indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)


# =============================================================================
# Snapshot Source
# =============================================================================


class SnapshotSource:
    """The snapshot file (or directory of fragments) written by the producer."""

    def __init__(self, path: str):
        self.path = path

    def files(self) -> List[str]:
        return find_snapshot_files(self.path)

    def fingerprint(self) -> Dict[str, float]:
        """Snapshot files and their mtimes, used to detect changes."""
        return get_files_mtimes(self.files())

    def read(self) -> Optional[List[Any]]:
        return load_snapshot(self.path)


# =============================================================================
# Core Reconciler
# =============================================================================


class Reconciler:
    """Drives one cycle at a time from a snapshot to DNS, ingress and state.

    Cycles must not overlap; callers run them from a single thread.
    """

    def __init__(
        self,
        *,
        control_plane: ControlPlane,
        resolver: TunnelIdentityResolver,
        state_store: StateStore,
        zone_id: str = "",
        domain: str = "",
    ):
        if not zone_id and not domain:
            raise ValueError("Either zone_id or domain is required")
        self.control_plane = control_plane
        self.resolver = resolver
        self.state_store = state_store
        self.domain = domain
        self._zone_id = zone_id
        self.phase = CyclePhase.IDLE

    def _enter(self, phase: CyclePhase) -> None:
        if phase != self.phase:
            logger.debug(f"Cycle phase: {self.phase.value} -> {phase.value}")
        self.phase = phase

    def _resolve_zone(self) -> str:
        if not self._zone_id:
            logger.info(f"Looking up Zone ID for domain: {self.domain}")
            self._zone_id = self.control_plane.find_zone_id(self.domain)
            logger.info(f"Zone ID: {self._zone_id}")
        return self._zone_id

    def _fail(self, counts: CycleCounts, error: Exception) -> CycleResult:
        failed_phase = self.phase
        logger.error(f"Cycle failed while {failed_phase.value}: {error}")
        self._enter(CyclePhase.FAILED)
        result = CycleResult(
            status=CycleStatus.FATAL, phase=failed_phase, counts=counts, error=str(error)
        )
        _log_summary(result)
        return result

    def sync_once(self, source: SnapshotSource) -> CycleResult:
        """Read the producer's snapshot and run one cycle with it."""
        self._enter(CyclePhase.VALIDATING)
        try:
            raw = source.read()
        except InputInvalidError as e:
            return self._fail(CycleCounts(), e)

        if raw is None:
            logger.info(f"No snapshot found at {source.path}, skipping update")
            self._enter(CyclePhase.IDLE)
            result = CycleResult(status=CycleStatus.SKIPPED, phase=CyclePhase.IDLE)
            _log_summary(result)
            return result

        return self.run_cycle(raw)

    def run_cycle(self, raw_snapshot: Any) -> CycleResult:
        """Run one reconciliation cycle against a raw snapshot.

        Per-route DNS failures are counted and the cycle carries on; they keep
        the snapshot from being committed. Auth failures, identity resolution
        and ingress push failures end the cycle immediately.
        """
        counts = CycleCounts()

        self._enter(CyclePhase.VALIDATING)
        try:
            routes = parse_snapshot(raw_snapshot, self.domain)
        except InputInvalidError as e:
            return self._fail(counts, e)

        previous = self.state_store.load()
        logger.info(f"Processing {len(routes)} routes")

        try:
            self._enter(CyclePhase.RESOLVING_IDENTITY)
            zone_id = self._resolve_zone()
            identity = self.resolver.resolve()

            self._enter(CyclePhase.APPLYING_ROUTES)
            self._apply_routes(zone_id, identity, routes, counts)

            self._enter(CyclePhase.PUSHING_INGRESS)
            self._push_ingress(identity, routes)

            self._enter(CyclePhase.CLEANING)
            pending = self._clean_removed(zone_id, identity, previous, routes, counts)
        except (ControlPlaneError, OSError) as e:
            return self._fail(counts, e)

        self._enter(CyclePhase.COMMITTING)
        if counts.failed:
            logger.warning(f"{counts.failed} route(s) failed to apply, not committing state")
            self._enter(CyclePhase.FAILED)
            result = CycleResult(
                status=CycleStatus.PARTIAL, phase=CyclePhase.COMMITTING, counts=counts
            )
            _log_summary(result)
            return result

        try:
            self.state_store.save(PersistedState(routes=routes, pending_cleanup=pending))
        except OSError as e:
            return self._fail(counts, e)

        self._enter(CyclePhase.IDLE)
        status = CycleStatus.PARTIAL if pending else CycleStatus.SUCCESS
        result = CycleResult(
            status=status,
            phase=CyclePhase.COMMITTING,
            counts=counts,
            committed=True,
            pending_cleanup=pending,
        )
        _log_summary(result)
        logger.info(f"Tunnel ID: {identity.id}")
        return result

    def _apply_routes(
        self,
        zone_id: str,
        identity: TunnelIdentity,
        routes: List[Route],
        counts: CycleCounts,
    ) -> None:
        for route in routes:
            counts.attempted += 1
            logger.info(f"Adding route: {route.hostname} -> {route.target}")
            try:
                outcome = self.control_plane.upsert_dns_record(
                    zone_id, route.hostname, identity.dns_target
                )
            except (TransportError, ApiError) as e:
                counts.failed += 1
                logger.error(f"Failed to upsert DNS record for {route.hostname}: {e}")
                continue

            counts.succeeded += 1
            if outcome == UpsertOutcome.CREATED:
                counts.created += 1
            elif outcome == UpsertOutcome.UPDATED:
                counts.updated += 1
            else:
                counts.unchanged += 1

    def _push_ingress(self, identity: TunnelIdentity, routes: List[Route]) -> None:
        rules = build_ingress_rules(routes)
        logger.info(f"Pushing tunnel configuration ({len(rules)} ingress rules)")
        try:
            self.control_plane.replace_ingress_config(identity.id, rules)
        except ControlPlaneError:
            # The tunnel may have been deleted remotely; look it up again next cycle.
            self.resolver.invalidate()
            raise
        logger.info("Tunnel configuration pushed successfully")

    def _clean_removed(
        self,
        zone_id: str,
        identity: TunnelIdentity,
        previous: Optional[PersistedState],
        routes: List[Route],
        counts: CycleCounts,
    ) -> List[str]:
        """Delete DNS records for removed routes. Returns hostnames still pending."""
        pending: List[str] = []
        for hostname in compute_removed(previous, routes, self.domain):
            counts.removed += 1
            logger.info(f"Route removed, cleaning up: {hostname}")
            try:
                if self.control_plane.remove_dns_record(zone_id, hostname, identity.dns_target):
                    counts.deleted += 1
            except (TransportError, ApiError) as e:
                counts.delete_failed += 1
                pending.append(hostname)
                logger.error(f"Failed to delete DNS record for {hostname}: {e}")
        return pending


def _log_summary(result: CycleResult) -> None:
    c = result.counts
    message = (
        f"Cycle {result.status.value}: routes attempted={c.attempted} "
        f"succeeded={c.succeeded} failed={c.failed} "
        f"(created={c.created} updated={c.updated} unchanged={c.unchanged}); "
        f"removed={c.removed} deleted={c.deleted} delete_failed={c.delete_failed}"
    )
    if result.pending_cleanup:
        message += f"; pending cleanup: {', '.join(result.pending_cleanup)}"
    if result.status == CycleStatus.FATAL:
        logger.error(f"{message}; error: {result.error}")
    elif result.status == CycleStatus.PARTIAL:
        logger.warning(message)
    else:
        logger.info(message)


def exit_code_for(result: CycleResult) -> int:
    if result.ok:
        return EXIT_OK
    if result.status == CycleStatus.PARTIAL:
        return EXIT_PARTIAL
    return EXIT_FATAL


# =============================================================================
# Watch Loop
# =============================================================================


def watch_loop(
    reconciler: Reconciler,
    source: SnapshotSource,
    *,
    poll_interval: float,
    resync_interval: float,
    retry_interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    max_polls: Optional[int] = None,
) -> None:
    """Poll the snapshot and run a cycle whenever it changes.

    A cycle also runs when resync_interval has passed since the last one, or
    retry_interval after a cycle that didn't fully succeed. Cycles run on this
    thread, so a change seen while one is running is picked up on the next
    poll rather than starting a second cycle.
    """
    last_fingerprint: Optional[Dict[str, float]] = None
    next_due = 0.0
    polls = 0

    while max_polls is None or polls < max_polls:
        polls += 1
        fingerprint = source.fingerprint()
        changed = fingerprint != last_fingerprint

        if changed or clock() >= next_due:
            if changed and last_fingerprint is not None:
                logger.info(f"Snapshot change detected in {source.path}")
            last_fingerprint = fingerprint

            try:
                result = reconciler.sync_once(source)
                ok = result.ok
            except Exception as e:
                logger.error(f"Unexpected error during cycle: {e}", exc_info=True)
                ok = False

            next_due = clock() + (resync_interval if ok else min(retry_interval, resync_interval))

        sleep(poll_interval)


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if not CLOUDFLARE_API_TOKEN:
        errors.append("CLOUDFLARE_API_TOKEN is required")
    if not CLOUDFLARE_ACCOUNT_ID:
        errors.append("CLOUDFLARE_ACCOUNT_ID is required")
    if not CLOUDFLARE_TUNNEL_NAME:
        errors.append("CLOUDFLARE_TUNNEL_NAME is required")
    if not CLOUDFLARE_DEFAULT_DOMAIN:
        errors.append("CLOUDFLARE_DEFAULT_DOMAIN is required")
    elif not is_valid_hostname(CLOUDFLARE_DEFAULT_DOMAIN):
        errors.append(
            f"CLOUDFLARE_DEFAULT_DOMAIN is not a valid domain: {CLOUDFLARE_DEFAULT_DOMAIN}"
        )

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
    if REQUEST_TIMEOUT_SECONDS <= 0:
        errors.append("REQUEST_TIMEOUT_SECONDS must be positive")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def create_reconciler() -> Reconciler:
    """Factory function wiring the reconciler from configuration."""
    client = CloudflareClient(
        CLOUDFLARE_API_TOKEN,
        CLOUDFLARE_ACCOUNT_ID,
        base_url=CLOUDFLARE_API_BASE,
        timeout_seconds=REQUEST_TIMEOUT_SECONDS,
    )
    resolver = TunnelIdentityResolver(client, CLOUDFLARE_TUNNEL_NAME, TUNNEL_TOKEN_PATH)
    return Reconciler(
        control_plane=client,
        resolver=resolver,
        state_store=FileStateStore(STATE_PATH),
        zone_id=CLOUDFLARE_ZONE_ID,
        domain=CLOUDFLARE_DEFAULT_DOMAIN,
    )


def main():
    """Main entry point."""
    logger.info(f"tunnel-manager: tunnel '{CLOUDFLARE_TUNNEL_NAME}' on {CLOUDFLARE_DEFAULT_DOMAIN}")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(EXIT_FATAL)

    reconciler = create_reconciler()
    source = SnapshotSource(SNAPSHOT_PATH)

    logger.info(f"Snapshot: {SNAPSHOT_PATH}")
    logger.info(f"State: {STATE_PATH}")
    logger.info(f"Sync mode: {SYNC_MODE}")

    try:
        if SYNC_MODE == "once":
            result = reconciler.sync_once(source)
            sys.exit(exit_code_for(result))

        logger.info(
            f"Poll interval: {POLL_INTERVAL_SECONDS}s, resync every {RESYNC_INTERVAL_SECONDS}s"
        )
        watch_loop(
            reconciler,
            source,
            poll_interval=max(1, POLL_INTERVAL_SECONDS),
            resync_interval=max(POLL_INTERVAL_SECONDS, RESYNC_INTERVAL_SECONDS),
            retry_interval=max(1, RETRY_INTERVAL_SECONDS),
        )

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(EXIT_FATAL)


if __name__ == "__main__":
    main()
