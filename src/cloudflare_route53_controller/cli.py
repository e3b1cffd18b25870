#!/usr/bin/env python3
"""cloudflare-route53-controller - Ingress annotations to Route53 + Cloudflare

Watches Kubernetes Ingress resources and keeps a pair of DNS records converged
for every opted-in ingress:

    Route53:    <host>  CNAME  <host>.cdn.cloudflare.net   (TTL 60)
    Cloudflare: <host>  CNAME  <origin>                    (proxied, TTL auto)

Ingress annotations (prefix is configurable, see ANNOTATION_PREFIX):

    <prefix>/cloudflare-record           Hostname to publish (opt-in marker)
    dns.alpha.kubernetes.io/external     Origin the Cloudflare record points to
    <prefix>/add-rules-hosts             "true" to also publish every rule host
    <prefix>/add-aliases                 "true" to also publish server aliases
    ingress.kubernetes.io/server-alias   Whitespace-separated alias hostnames

    The rule host and alias annotations are only honoured when the controller
    runs with ENABLE_ADDITIONAL_HOSTS_ANNOTATIONS=true.

Environment variables:

    Controller:
        ANNOTATION_PREFIX      Annotation prefix (default: cloudflare.patoarvizu.dev)
        ENABLE_ADDITIONAL_HOSTS_ANNOTATIONS
                               Honour add-rules-hosts / add-aliases (default: false)
        WORKERS                Number of reconcile worker threads (default: 1)
        FREQUENCY_SECONDS      Full resync interval in seconds (default: 30)
        WATCH_NAMESPACE        Only watch this namespace (default: all namespaces)
        KUBECONFIG             Path to a kubeconfig file (default: in-cluster config)

    Route53:
        HOSTED_ZONE_ID         Route53 hosted zone to manage (required)
        AWS_*                  Standard boto3 credential/region variables

    Cloudflare:
        CLOUDFLARE_ZONE_NAME   Cloudflare zone to manage, e.g. "example.com" (required)
        CLOUDFLARE_TOKEN       API token, or global API key when CLOUDFLARE_EMAIL is set
        CLOUDFLARE_EMAIL       Account email for global API key auth (optional)

    Runtime:
        PROVIDER_TIMEOUT_SECONDS   Timeout for each DNS provider call (default: 10)
        RETRY_BASE_DELAY_SECONDS   First requeue delay after a failure (default: 0.005)
        RETRY_MAX_DELAY_SECONDS    Upper bound for the requeue delay (default: 1000)
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
        CONFIG_PATH                Optional YAML file with the same settings in
                                   snake_case (default: /config/controller.yaml).
                                   Environment variables take precedence.
                                   Example:
                                     hosted_zone_id: Z0123456789ABC
                                     cloudflare_zone_name: example.com
                                     enable_additional_hosts: true
                                     workers: 2
"""

from __future__ import annotations

import heapq
import itertools
import logging
import os
import signal
import sys
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import boto3
import requests
import urllib3
import yaml
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException

# =============================================================================
# Constants
# =============================================================================

CONTROLLER_AGENT_NAME = "cloudflare-route53-controller"

DEFAULT_ANNOTATION_PREFIX = "cloudflare.patoarvizu.dev"
DEFAULT_CONFIG_PATH = "/config/controller.yaml"

EXTERNAL_HOSTNAME_ANNOTATION = "dns.alpha.kubernetes.io/external"
SERVER_ALIAS_ANNOTATION = "ingress.kubernetes.io/server-alias"

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
CLOUDFLARE_CDN_SUFFIX = "cdn.cloudflare.net"
ROUTE53_TTL = 60
CLOUDFLARE_AUTO_TTL = 1

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class ControllerError(Exception):
    """Base class for errors raised by the controller."""


class PreconditionError(ControllerError):
    """A reconcile cannot start: the ingress or a provider zone is unavailable."""


class ProviderError(ControllerError):
    """A single DNS provider call failed."""


# =============================================================================
# Enums
# =============================================================================


class ChangeType(Enum):
    """Kind of ingress notification delivered by the watcher."""

    ADDED = "added"
    UPDATED = "updated"


class ReconcileState(Enum):
    """Terminal state of one reconcile invocation.

    SUCCEEDED: The key is forgotten by the queue (backoff reset).
    REQUEUED:  The key goes back on the queue after a rate-limited delay.
    """

    SUCCEEDED = "succeeded"
    REQUEUED = "requeued"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ChangeEvent:
    """Ingress add/update notification reduced to its queue key."""

    type: ChangeType
    key: str


@dataclass(frozen=True)
class IngressSnapshot:
    """Read-only view of an Ingress at reconcile time."""

    namespace: str
    name: str
    uid: str = ""
    annotations: Mapping[str, str] = field(default_factory=dict)
    rule_hosts: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @classmethod
    def from_ingress(cls, ingress: Any) -> "IngressSnapshot":
        """Build a snapshot from a kubernetes V1Ingress object.

        Rules without a host (catch-all rules) are skipped.
        """
        metadata = ingress.metadata
        spec = ingress.spec
        rules = (spec.rules if spec is not None else None) or []
        return cls(
            namespace=metadata.namespace or "",
            name=metadata.name,
            uid=metadata.uid or "",
            annotations=dict(metadata.annotations or {}),
            rule_hosts=tuple(rule.host for rule in rules if rule.host),
        )


@dataclass(frozen=True)
class SyncPolicy:
    """DNS intent extracted from an ingress's annotations."""

    record_target: str
    origin_host: str
    include_rule_hosts: bool = False
    include_alias_hosts: bool = False
    alias_hosts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderRecordDescriptor:
    """Desired state of one record in one provider."""

    name: str
    value: str
    ttl: int
    proxied: bool = False
    type: str = "CNAME"


@dataclass(frozen=True)
class SyncFailure:
    """A failed (host, provider) upsert."""

    host: str
    provider: str
    error: str


@dataclass
class SyncOutcome:
    """Aggregate result of the upsert pass for one ingress."""

    failures: List[SyncFailure] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.failures)


@dataclass(frozen=True)
class ControllerConfig:
    """Controller settings, resolved once at startup and passed explicitly."""

    annotation_prefix: str = DEFAULT_ANNOTATION_PREFIX
    hosted_zone_id: str = ""
    cloudflare_zone_name: str = ""
    cloudflare_token: str = ""
    cloudflare_email: str = ""
    enable_additional_hosts: bool = False
    workers: int = 1
    resync_interval_seconds: int = 30
    provider_timeout_seconds: float = 10.0
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 1000.0
    watch_namespace: str = ""
    kubeconfig: str = ""


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_annotation_bool(value: Optional[str]) -> bool:
    """Parse a boolean annotation; anything unrecognised is False."""
    return value in {"1", "t", "T", "true", "TRUE", "True"}


def _parse_number(
    value: Any, *, default: float, name: str, cast: Callable[[Any], Any] = int
) -> Any:
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid value for {name}: {value!r}, using default {default}")
        return default


def split_meta_namespace_key(key: str) -> Tuple[str, str]:
    """Split a "namespace/name" key. A bare "name" has an empty namespace."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def meta_namespace_key(obj: Any) -> str:
    """Queue key for a kubernetes object."""
    metadata = obj.metadata
    if metadata.namespace:
        return f"{metadata.namespace}/{metadata.name}"
    return metadata.name


def remove_duplicates(hosts: Sequence[str]) -> List[str]:
    """Drop repeated hosts, keeping the first occurrence of each."""
    return list(dict.fromkeys(hosts))


# =============================================================================
# Sync Policy and Host Set
# =============================================================================


def extract_sync_policy(annotations: Mapping[str, str], prefix: str) -> Optional[SyncPolicy]:
    """Read the DNS sync policy from an ingress's annotations.

    Returns None when the ingress is not opted in: either the record
    annotation or the external hostname annotation is missing.
    """
    record_target = annotations.get(f"{prefix}/cloudflare-record")
    if record_target is None:
        return None

    origin_host = annotations.get(EXTERNAL_HOSTNAME_ANNOTATION)
    if origin_host is None:
        return None

    return SyncPolicy(
        record_target=record_target,
        origin_host=origin_host,
        include_rule_hosts=_parse_annotation_bool(annotations.get(f"{prefix}/add-rules-hosts")),
        include_alias_hosts=_parse_annotation_bool(annotations.get(f"{prefix}/add-aliases")),
        alias_hosts=tuple((annotations.get(SERVER_ALIAS_ANNOTATION) or "").split()),
    )


def resolve_host_set(
    policy: SyncPolicy, snapshot: IngressSnapshot, enable_additional_hosts: bool
) -> List[str]:
    """Expand a policy into the ordered, duplicate-free list of hosts to sync.

    The record target always comes first. Rule hosts and then aliases follow
    only when additional hosts are enabled controller-wide and the ingress
    asks for them.
    """
    hosts = [policy.record_target]
    if enable_additional_hosts and policy.include_rule_hosts:
        hosts.extend(snapshot.rule_hosts)
    if enable_additional_hosts and policy.include_alias_hosts:
        hosts.extend(policy.alias_hosts)
    return remove_duplicates(hosts)


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging and events."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def resolve_zone_id(self) -> str:
        """Return the identifier of the managed zone. Raises ProviderError."""
        pass

    @abstractmethod
    def desired_record(self, host: str, origin_host: str) -> ProviderRecordDescriptor:
        """Return the record this provider should hold for host."""
        pass

    @abstractmethod
    def upsert_record(self, zone_id: str, record: ProviderRecordDescriptor) -> None:
        """Create or replace a record. Raises ProviderError."""
        pass


class Route53DNSProvider(DNSProvider):
    """AWS Route53 provider.

    Route53 has a native UPSERT change action, so submitting the same desired
    state twice leaves a single, unchanged record set.
    """

    def __init__(self, hosted_zone_id: str, client: Any = None, timeout_seconds: float = 10.0):
        self._hosted_zone_id = hosted_zone_id
        if client is None:
            client = boto3.client(
                "route53",
                config=BotoConfig(connect_timeout=timeout_seconds, read_timeout=timeout_seconds),
            )
        self._client = client

    @property
    def name(self) -> str:
        return "Route53"

    def test_connection(self) -> bool:
        try:
            self._client.get_hosted_zone(Id=self._hosted_zone_id)
            logger.info(f"{self.name} connection successful (hosted zone {self._hosted_zone_id})")
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def resolve_zone_id(self) -> str:
        if not self._hosted_zone_id:
            raise ProviderError("no Route53 hosted zone configured")
        return self._hosted_zone_id

    def desired_record(self, host: str, origin_host: str) -> ProviderRecordDescriptor:
        return ProviderRecordDescriptor(
            name=host, value=f"{host}.{CLOUDFLARE_CDN_SUFFIX}", ttl=ROUTE53_TTL
        )

    def upsert_record(self, zone_id: str, record: ProviderRecordDescriptor) -> None:
        change_batch = {
            "Changes": [
                {
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": record.name,
                        "Type": record.type,
                        "TTL": record.ttl,
                        "ResourceRecords": [{"Value": record.value}],
                    },
                }
            ]
        }
        try:
            self._client.change_resource_record_sets(HostedZoneId=zone_id, ChangeBatch=change_batch)
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"Route53 upsert of {record.name} failed: {e}") from e
        logger.info(f"Upserted Route53 record: {record.name} -> {record.value}")


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare provider over the v4 REST API.

    The API has no upsert, so records are looked up by name and type first,
    then the first match is updated or a new record is created. Each worker
    thread gets its own requests.Session.
    """

    def __init__(
        self,
        token: str,
        email: str = "",
        *,
        zone_name: str,
        base_url: str = CLOUDFLARE_API_URL,
        timeout_seconds: float = 10.0,
    ):
        self._url = base_url.rstrip("/")
        self._zone_name = zone_name
        self._email = email
        self._timeout = timeout_seconds
        if email:
            self._headers = {"X-Auth-Email": email, "X-Auth-Key": token}
        else:
            self._headers = {"Authorization": f"Bearer {token}"}
        self._local = threading.local()

    @property
    def name(self) -> str:
        return "Cloudflare"

    @property
    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self._headers)
            self._local.session = session
        return session

    def _result(self, response: requests.Response) -> Any:
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict) or not data.get("success", False):
            errors = data.get("errors") if isinstance(data, dict) else data
            raise ProviderError(f"Cloudflare API error: {errors}")
        return data.get("result")

    def test_connection(self) -> bool:
        # Global API keys cannot call the token verification endpoint.
        path = "/user" if self._email else "/user/tokens/verify"
        try:
            self._result(self._session.get(f"{self._url}{path}", timeout=self._timeout))
            logger.info(f"{self.name} connection successful")
            return True
        except (requests.exceptions.RequestException, ValueError, ProviderError) as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def resolve_zone_id(self) -> str:
        try:
            zones = self._result(
                self._session.get(
                    f"{self._url}/zones", params={"name": self._zone_name}, timeout=self._timeout
                )
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderError(f"Failed to look up Cloudflare zone {self._zone_name}: {e}") from e
        if not zones:
            raise ProviderError(f"Cloudflare zone {self._zone_name} not found")
        return zones[0]["id"]

    def find_records(self, zone_id: str, name: str, record_type: str) -> List[Dict[str, Any]]:
        try:
            records = self._result(
                self._session.get(
                    f"{self._url}/zones/{zone_id}/dns_records",
                    params={"type": record_type, "name": name},
                    timeout=self._timeout,
                )
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderError(f"Failed to list Cloudflare records for {name}: {e}") from e
        return records or []

    def desired_record(self, host: str, origin_host: str) -> ProviderRecordDescriptor:
        return ProviderRecordDescriptor(
            name=host, value=origin_host, ttl=CLOUDFLARE_AUTO_TTL, proxied=True
        )

    def upsert_record(self, zone_id: str, record: ProviderRecordDescriptor) -> None:
        existing = self.find_records(zone_id, record.name, record.type)
        payload = {
            "type": record.type,
            "name": record.name,
            "content": record.value,
            "ttl": record.ttl,
            "proxied": record.proxied,
        }
        try:
            if existing:
                record_id = existing[0]["id"]
                self._result(
                    self._session.put(
                        f"{self._url}/zones/{zone_id}/dns_records/{record_id}",
                        json=payload,
                        timeout=self._timeout,
                    )
                )
                logger.info(f"Updated Cloudflare record: {record.name} -> {record.value}")
            else:
                self._result(
                    self._session.post(
                        f"{self._url}/zones/{zone_id}/dns_records",
                        json=payload,
                        timeout=self._timeout,
                    )
                )
                logger.info(f"Created Cloudflare record: {record.name} -> {record.value}")
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderError(f"Cloudflare upsert of {record.name} failed: {e}") from e


# =============================================================================
# Kubernetes Integration
# =============================================================================


class IngressSource(ABC):
    """Abstract base class for looking up ingresses by key."""

    @abstractmethod
    def get(self, namespace: str, name: str) -> Optional[IngressSnapshot]:
        """Return the current ingress, None if it no longer exists.

        Raises PreconditionError if the lookup itself fails.
        """
        pass


class KubernetesIngressSource(IngressSource):
    """Reads ingresses from the API server (networking.k8s.io/v1)."""

    def __init__(self, networking_api: Any):
        self._api = networking_api

    def get(self, namespace: str, name: str) -> Optional[IngressSnapshot]:
        try:
            ingress = self._api.read_namespaced_ingress(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise PreconditionError(f"Failed to fetch ingress {namespace}/{name}: {e.reason}") from e
        except urllib3.exceptions.HTTPError as e:
            raise PreconditionError(f"Failed to fetch ingress {namespace}/{name}: {e}") from e
        return IngressSnapshot.from_ingress(ingress)


class EventRecorder(ABC):
    """Abstract base class for ingress event sinks."""

    @abstractmethod
    def event(self, ingress: IngressSnapshot, event_type: str, reason: str, message: str) -> None:
        """Record an event against an ingress. Must not raise."""
        pass


class KubernetesEventRecorder(EventRecorder):
    """Posts core/v1 Events for an ingress and mirrors them to the log."""

    def __init__(self, core_api: Any, component: str = CONTROLLER_AGENT_NAME):
        self._api = core_api
        self._component = component

    def event(self, ingress: IngressSnapshot, event_type: str, reason: str, message: str) -> None:
        logger.info(
            f"Event(Ingress {ingress.key}): type: '{event_type}' reason: '{reason}' {message}"
        )
        now = datetime.now(timezone.utc)
        body = k8s_client.CoreV1Event(
            metadata=k8s_client.V1ObjectMeta(
                generate_name=f"{ingress.name}.", namespace=ingress.namespace
            ),
            involved_object=k8s_client.V1ObjectReference(
                api_version="networking.k8s.io/v1",
                kind="Ingress",
                name=ingress.name,
                namespace=ingress.namespace,
                uid=ingress.uid or None,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=k8s_client.V1EventSource(component=self._component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self._api.create_namespaced_event(ingress.namespace, body)
        except (ApiException, ValueError, urllib3.exceptions.HTTPError) as e:
            logger.error(f"Failed to record event for ingress {ingress.key}: {e}")


class IngressWatcher(threading.Thread):
    """List and watch ingresses, turning notifications into ChangeEvents.

    Each pass lists every ingress (ADDED on the first pass, UPDATED on later
    ones) and then watches from the list's resource version until the resync
    interval elapses, so every ingress is revisited at least once per interval.
    Deletions are ignored.
    """

    def __init__(
        self,
        networking_api: Any,
        handler: Callable[[ChangeEvent], None],
        *,
        stop_event: threading.Event,
        namespace: str = "",
        resync_interval_seconds: int = 30,
        error_backoff_seconds: float = 5.0,
    ):
        super().__init__(name="ingress-watcher", daemon=True)
        self._api = networking_api
        self._handler = handler
        self._stop_event = stop_event
        self._namespace = namespace
        self._resync = max(1, int(resync_interval_seconds))
        self._error_backoff = error_backoff_seconds
        self._listed_once = False

    def _list_call(self) -> Tuple[Callable[..., Any], Tuple[str, ...]]:
        # Watch.stream parses the return type from the method docstring; do not wrap it.
        if self._namespace:
            return self._api.list_namespaced_ingress, (self._namespace,)
        return self._api.list_ingress_for_all_namespaces, ()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                resource_version = self.list_once()
                self.watch_once(resource_version)
            except Exception as e:
                logger.error(f"Ingress watch failed, relisting: {e}")
                self._stop_event.wait(self._error_backoff)

    def list_once(self) -> str:
        """Deliver every current ingress; returns the list resource version."""
        func, args = self._list_call()
        result = func(*args)
        change_type = ChangeType.UPDATED if self._listed_once else ChangeType.ADDED
        for ingress in result.items or []:
            self._handler(ChangeEvent(change_type, meta_namespace_key(ingress)))
        self._listed_once = True
        logger.debug(f"Listed {len(result.items or [])} ingress(es)")
        return result.metadata.resource_version

    def watch_once(self, resource_version: str) -> None:
        func, args = self._list_call()
        w = k8s_watch.Watch()
        for event in w.stream(
            func,
            *args,
            resource_version=resource_version,
            timeout_seconds=self._resync,
        ):
            if self._stop_event.is_set():
                w.stop()
                break
            event_type = event.get("type")
            if event_type == "ADDED":
                self._handler(ChangeEvent(ChangeType.ADDED, meta_namespace_key(event["object"])))
            elif event_type == "MODIFIED":
                self._handler(ChangeEvent(ChangeType.UPDATED, meta_namespace_key(event["object"])))


def load_kube_config(kubeconfig: str = "") -> None:
    """Load an explicit kubeconfig, else in-cluster config, else the default kubeconfig."""
    if kubeconfig:
        k8s_config.load_kube_config(config_file=kubeconfig)
        return
    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        k8s_config.load_kube_config()


# =============================================================================
# Work Queue
# =============================================================================


class RateLimitingQueue:
    """Deduplicating work queue with per-key exponential backoff.

    A key added while already queued collapses into the queued entry. A key
    added while a worker holds it is parked and requeued by done(), so no two
    workers ever process the same key at once.
    """

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _drain_waiting_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._sequence), key))
            self._cond.notify()

    def when(self, key: str) -> float:
        """Record a failure for key and return how long to wait before retrying."""
        with self._cond:
            exponent = self._failures.get(key, 0)
            self._failures[key] = exponent + 1
        if exponent >= 64:
            return self._max_delay
        return min(self._base_delay * (2**exponent), self._max_delay)

    def add_rate_limited(self, key: str) -> None:
        self.add_after(key, self.when(key))

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self) -> Tuple[Optional[str], bool]:
        """Block until a key is ready. Returns (key, shutdown)."""
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                self._drain_waiting_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key, False
                timeout = None
                if self._waiting:
                    timeout = max(0.0, self._waiting[0][0] - self._clock())
                self._cond.wait(timeout)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


# =============================================================================
# DNS Upsert and Outcome Reporting
# =============================================================================


def upsert_hosts(
    hosts: Sequence[str],
    origin_host: str,
    targets: Sequence[Tuple[DNSProvider, str]],
    on_failure: Optional[Callable[[str, DNSProvider, ProviderError], None]] = None,
) -> SyncOutcome:
    """Upsert every host into every (provider, zone_id) target.

    Hosts are handled one at a time and, per host, targets in the given
    order, so both providers change together before the next host starts.
    A failing step is recorded and reported, and never stops the loop.
    """
    outcome = SyncOutcome()
    for host in hosts:
        for provider, zone_id in targets:
            try:
                provider.upsert_record(zone_id, provider.desired_record(host, origin_host))
            except ProviderError as e:
                logger.error(f"{provider.name} record ({host}) failed to update: {e}")
                outcome.failures.append(SyncFailure(host=host, provider=provider.name, error=str(e)))
                if on_failure is not None:
                    on_failure(host, provider, e)
    return outcome


def report_outcome(
    recorder: EventRecorder, ingress: IngressSnapshot, key: str, outcome: SyncOutcome
) -> None:
    """Emit the success event when nothing failed."""
    if outcome.failed:
        logger.warning(
            f"Ingress {key} synced with {len(outcome.failures)} failure(s): "
            + ", ".join(f"{f.provider}/{f.host}" for f in outcome.failures)
        )
        return
    recorder.event(
        ingress,
        EVENT_TYPE_NORMAL,
        "Synced",
        f"Cloudflare and Route53 records for ingress {key} have been synced.",
    )


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    def __init__(
        self,
        *,
        config: ControllerConfig,
        ingress_source: IngressSource,
        route53: DNSProvider,
        cloudflare: DNSProvider,
        recorder: EventRecorder,
    ):
        self.config = config
        self.ingress_source = ingress_source
        self.route53 = route53
        self.cloudflare = cloudflare
        self.recorder = recorder

    def _resolve_targets(self) -> List[Tuple[DNSProvider, str]]:
        targets: List[Tuple[DNSProvider, str]] = []
        # Route53 goes first for every host.
        for provider in (self.route53, self.cloudflare):
            try:
                targets.append((provider, provider.resolve_zone_id()))
            except ProviderError as e:
                raise PreconditionError(f"Cannot resolve {provider.name} zone: {e}") from e
        return targets

    def _warn_failure(
        self, ingress: IngressSnapshot, host: str, provider: DNSProvider, error: ProviderError
    ) -> None:
        self.recorder.event(
            ingress,
            EVENT_TYPE_WARNING,
            "Error",
            f"{provider.name} record ({host}) failed to update.",
        )

    def reconcile(self, key: str) -> ReconcileState:
        """Converge DNS for the ingress behind key."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError as e:
            # Requeueing a malformed key can never succeed.
            logger.error(f"Invalid resource key: {e}")
            return ReconcileState.SUCCEEDED

        try:
            return self._reconcile(key, namespace, name)
        except PreconditionError as e:
            logger.error(f"Error syncing ingress {key}: {e}")
            return ReconcileState.REQUEUED

    def _reconcile(self, key: str, namespace: str, name: str) -> ReconcileState:
        ingress = self.ingress_source.get(namespace, name)
        if ingress is None:
            logger.debug(f"Ingress {key} no longer exists, nothing to do")
            return ReconcileState.SUCCEEDED

        policy = extract_sync_policy(ingress.annotations, self.config.annotation_prefix)
        if policy is None:
            logger.debug(f"Ingress {key} is not annotated for DNS sync, skipping")
            return ReconcileState.SUCCEEDED

        if policy.record_target == policy.origin_host:
            logger.info(
                f"Origin and Cloudflare record are the same ({policy.record_target}), skipping."
            )
            return ReconcileState.SUCCEEDED

        targets = self._resolve_targets()
        hosts = resolve_host_set(policy, ingress, self.config.enable_additional_hosts)
        logger.info(f"Syncing ingress {key}: {', '.join(hosts)} -> {policy.origin_host}")

        outcome = upsert_hosts(
            hosts,
            policy.origin_host,
            targets,
            on_failure=partial(self._warn_failure, ingress),
        )
        report_outcome(self.recorder, ingress, key, outcome)
        return ReconcileState.REQUEUED if outcome.failed else ReconcileState.SUCCEEDED


# =============================================================================
# Controller
# =============================================================================


class Controller:
    """Runs a pool of workers pulling ingress keys off a shared queue."""

    def __init__(self, reconciler: Reconciler, queue: RateLimitingQueue):
        self.reconciler = reconciler
        self.queue = queue

    def enqueue(self, event: ChangeEvent) -> None:
        logger.debug(f"Ingress {event.key} {event.type.value}, enqueueing")
        self.queue.add(event.key)

    def process_next_work_item(self) -> bool:
        """Reconcile one key. Returns False once the queue is shut down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False

        try:
            try:
                state = self.reconciler.reconcile(key)
            except Exception as e:
                logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
                state = ReconcileState.REQUEUED

            if state is ReconcileState.REQUEUED:
                self.queue.add_rate_limited(key)
                logger.info(f"Requeued ingress {key} (retry {self.queue.num_requeues(key)})")
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Start workers and block until stop_event is set.

        On stop the queue is shut down so idle workers exit; workers busy with
        a reconcile finish it first.
        """
        logger.info(f"Starting {workers} worker(s)")
        threads = [
            threading.Thread(target=self.run_worker, name=f"worker-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in threads:
            thread.start()
        logger.info("Started workers")

        while not stop_event.is_set():
            stop_event.wait(1.0)

        logger.info("Shutting down workers")
        self.queue.shut_down()
        for thread in threads:
            thread.join()


# =============================================================================
# Configuration
# =============================================================================

# Environment variable -> ControllerConfig field
_ENV_FIELDS = {
    "ANNOTATION_PREFIX": "annotation_prefix",
    "HOSTED_ZONE_ID": "hosted_zone_id",
    "CLOUDFLARE_ZONE_NAME": "cloudflare_zone_name",
    "CLOUDFLARE_TOKEN": "cloudflare_token",
    "CLOUDFLARE_EMAIL": "cloudflare_email",
    "ENABLE_ADDITIONAL_HOSTS_ANNOTATIONS": "enable_additional_hosts",
    "WORKERS": "workers",
    "FREQUENCY_SECONDS": "resync_interval_seconds",
    "PROVIDER_TIMEOUT_SECONDS": "provider_timeout_seconds",
    "RETRY_BASE_DELAY_SECONDS": "retry_base_delay_seconds",
    "RETRY_MAX_DELAY_SECONDS": "retry_max_delay_seconds",
    "WATCH_NAMESPACE": "watch_namespace",
    "KUBECONFIG": "kubeconfig",
}


def _load_config_file(config_path: str) -> Dict[str, Any]:
    """Read settings from a YAML file; missing or broken files yield {}."""
    if not config_path or not Path(config_path).is_file():
        return {}
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {config_path} is not a mapping, ignoring it")
        return {}

    known = set(_ENV_FIELDS.values())
    for unknown in sorted(set(data) - known):
        logger.warning(f"Ignoring unknown setting '{unknown}' in {config_path}")
    return {k: v for k, v in data.items() if k in known}


def load_config(
    environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None
) -> ControllerConfig:
    """Build the controller config from the YAML file, then the environment."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = env.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)

    values = _load_config_file(config_path)
    for env_name, field_name in _ENV_FIELDS.items():
        value = env.get(env_name)
        if value is not None and value.strip() != "":
            values[field_name] = value

    defaults = ControllerConfig()

    def text(field_name: str) -> str:
        value = values.get(field_name)
        return str(value).strip() if value is not None else getattr(defaults, field_name)

    return ControllerConfig(
        annotation_prefix=text("annotation_prefix") or DEFAULT_ANNOTATION_PREFIX,
        hosted_zone_id=text("hosted_zone_id"),
        cloudflare_zone_name=text("cloudflare_zone_name"),
        cloudflare_token=text("cloudflare_token"),
        cloudflare_email=text("cloudflare_email"),
        enable_additional_hosts=_parse_bool(values.get("enable_additional_hosts"), default=False),
        workers=_parse_number(values.get("workers"), default=defaults.workers, name="workers"),
        resync_interval_seconds=_parse_number(
            values.get("resync_interval_seconds"),
            default=defaults.resync_interval_seconds,
            name="resync_interval_seconds",
        ),
        provider_timeout_seconds=_parse_number(
            values.get("provider_timeout_seconds"),
            default=defaults.provider_timeout_seconds,
            name="provider_timeout_seconds",
            cast=float,
        ),
        retry_base_delay_seconds=_parse_number(
            values.get("retry_base_delay_seconds"),
            default=defaults.retry_base_delay_seconds,
            name="retry_base_delay_seconds",
            cast=float,
        ),
        retry_max_delay_seconds=_parse_number(
            values.get("retry_max_delay_seconds"),
            default=defaults.retry_max_delay_seconds,
            name="retry_max_delay_seconds",
            cast=float,
        ),
        watch_namespace=text("watch_namespace"),
        kubeconfig=text("kubeconfig"),
    )


def validate_config(config: ControllerConfig) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors = []

    if not config.hosted_zone_id:
        errors.append("HOSTED_ZONE_ID is required")
    if not config.cloudflare_zone_name:
        errors.append("CLOUDFLARE_ZONE_NAME is required")
    if not config.cloudflare_token:
        errors.append("CLOUDFLARE_TOKEN is required")
    if config.workers < 1:
        errors.append(f"WORKERS must be at least 1 (got {config.workers})")
    if config.resync_interval_seconds < 1:
        errors.append(
            f"FREQUENCY_SECONDS must be at least 1 (got {config.resync_interval_seconds})"
        )
    if config.provider_timeout_seconds <= 0:
        errors.append(
            f"PROVIDER_TIMEOUT_SECONDS must be positive (got {config.provider_timeout_seconds})"
        )
    if config.retry_base_delay_seconds <= 0 or (
        config.retry_max_delay_seconds < config.retry_base_delay_seconds
    ):
        errors.append(
            "RETRY_BASE_DELAY_SECONDS must be positive and not above RETRY_MAX_DELAY_SECONDS"
        )

    return errors


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    logger.info(f"{CONTROLLER_AGENT_NAME}: ingress annotations -> Route53 + Cloudflare")

    config = load_config()
    errors = validate_config(config)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    try:
        load_kube_config(config.kubeconfig)
    except k8s_config.ConfigException as e:
        logger.error(f"Error building kubeconfig: {e}")
        sys.exit(1)

    networking_api = k8s_client.NetworkingV1Api()
    core_api = k8s_client.CoreV1Api()

    route53 = Route53DNSProvider(
        config.hosted_zone_id, timeout_seconds=config.provider_timeout_seconds
    )
    cloudflare = CloudflareDNSProvider(
        config.cloudflare_token,
        config.cloudflare_email,
        zone_name=config.cloudflare_zone_name,
        timeout_seconds=config.provider_timeout_seconds,
    )
    for provider in (route53, cloudflare):
        if not provider.test_connection():
            logger.error(f"Cannot connect to {provider.name}. Exiting.")
            sys.exit(1)

    logger.info(f"Annotation prefix: {config.annotation_prefix}")
    logger.info(f"Route53 hosted zone: {config.hosted_zone_id}")
    logger.info(f"Cloudflare zone: {config.cloudflare_zone_name}")
    logger.info(
        f"Additional hosts annotations: {'enabled' if config.enable_additional_hosts else 'disabled'}"
    )
    logger.info(f"Watching: {config.watch_namespace or 'all namespaces'}")
    logger.info(f"Resync interval: {config.resync_interval_seconds}s")

    queue = RateLimitingQueue(
        base_delay=config.retry_base_delay_seconds, max_delay=config.retry_max_delay_seconds
    )
    reconciler = Reconciler(
        config=config,
        ingress_source=KubernetesIngressSource(networking_api),
        route53=route53,
        cloudflare=cloudflare,
        recorder=KubernetesEventRecorder(core_api),
    )
    controller = Controller(reconciler, queue)

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        if stop_event.is_set():
            logger.warning("Received second signal, exiting immediately")
            os._exit(1)
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    watcher = IngressWatcher(
        networking_api,
        controller.enqueue,
        stop_event=stop_event,
        namespace=config.watch_namespace,
        resync_interval_seconds=config.resync_interval_seconds,
    )
    watcher.start()

    try:
        controller.run(config.workers, stop_event)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
