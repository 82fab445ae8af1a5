#!/usr/bin/env python3
"""k8s-endpoint-updater - Workload Address to Kubernetes Endpoints Sync

Resolves the IPv4 address of a workload that Kubernetes cannot see on its own
(for example a guest cluster VM running on a host node) and writes it into the
Endpoints record of a service. The address stays registered for the lifetime of
this process and is removed again when the process receives SIGTERM or SIGINT.

Supported address providers:
    - bridge: address of a host bridge interface plus one
    - env:    one environment variable per pod
    - etcd:   one etcd key per pod (v2 keys API or v3 JSON gateway)

Environment variables:

    Destination:
        SERVICE_NAMESPACE       Namespace of the service (default: default)
        SERVICE_NAME            Name of the service whose endpoints are updated
        CREATE_ENDPOINTS        Create the Endpoints record if missing (default: true)
        ANNOTATE_PODS           Annotate each pod with its resolved address (default: false)

    Provider Selection:
        PROVIDER_KIND           "bridge", "env" or "etcd" (default: env)

    Bridge Provider:
        BRIDGE_NAME             Bridge interface of the guest VM on the host network
        BRIDGE_IDENTITY         Pod name to attach to the resolved address (optional)

    Env Provider:
        ENV_PREFIX              Variable name prefix (default: K8S_ENDPOINT_UPDATER_POD_)
                                K8S_ENDPOINT_UPDATER_POD_<pod-name>=<ipv4>
        POD_NAMES               Comma-separated pod names to require (optional).
                                When empty every variable with the prefix is used.

    Etcd Provider:
        ETCD_ADDRESS            etcd base URL, e.g. http://127.0.0.1:2379
        ETCD_KIND               "etcdv2" or "etcdv3" (default: etcdv2)
        ETCD_PREFIX             Key prefix; <prefix>/<pod-name> = <ipv4>

    Kubernetes:
        KUBERNETES_ADDRESS      API server URL (default: http://127.0.0.1:6443,
                                or the in-cluster service address)
        KUBERNETES_IN_CLUSTER   Use the pod service account (default: false)
        KUBERNETES_TLS_CA_FILE  CA bundle used to verify the API server
        KUBERNETES_TLS_CRT_FILE Client certificate
        KUBERNETES_TLS_KEY_FILE Client key

    Runtime:
        RETRY_MAX_ATTEMPTS      Attempts per operation (default: 10)
        RETRY_INITIAL_INTERVAL  First backoff delay in seconds (default: 0.5)
        RETRY_MAX_INTERVAL      Backoff delay cap in seconds (default: 60)
        RETRY_MAX_ELAPSED       Time budget per operation in seconds, 0 = none (default: 0)
        REQUEST_TIMEOUT_SECONDS Timeout for a single HTTP request (default: 10)
        LOG_LEVEL               DEBUG, INFO, WARNING, ERROR (default: INFO)
        CONFIG_PATH             Optional YAML file with the same settings as
                                lower-case keys (service, namespace, provider_kind, ...).
                                Environment variables take precedence.

Exit codes:
    0   addresses applied and removed again
    1   invalid configuration or unexpected error
    2   address lookup failed
    3   adding addresses to the endpoints failed (nothing is removed)
    4   removing addresses from the endpoints failed
"""

from __future__ import annotations

import argparse
import base64
import ipaddress
import logging
import os
import signal
import socket
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields, replace
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, TypeVar

import psutil
import requests
import yaml
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

__version__ = "0.3.0"

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ENV_PREFIX = "K8S_ENDPOINT_UPDATER_POD_"
DEFAULT_KUBERNETES_ADDRESS = "http://127.0.0.1:6443"
SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")

ADDRESS_ANNOTATION = "endpoint-updater/address"
SERVICE_ANNOTATION = "endpoint-updater/service"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"

PROVIDER_KINDS = ("bridge", "env", "etcd")
ETCD_KINDS = ("etcdv2", "etcdv3")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# =============================================================================
# Errors
# =============================================================================


class EndpointUpdaterError(Exception):
    """Base class for all updater errors.

    ``transient`` tells the retry policy whether trying again can help.
    """

    transient = False


class ConfigurationError(EndpointUpdaterError):
    """Missing or invalid settings."""


class ResolutionError(EndpointUpdaterError):
    """A provider could not produce address facts."""


class InterfaceNotFoundError(ResolutionError):
    # The bridge may not be up yet when the updater starts.
    transient = True


class NoAddressError(ResolutionError):
    transient = True


class InvalidAddressError(ResolutionError):
    """A value that should be an IPv4 literal is not one."""


class StoreUnavailableError(ResolutionError):
    transient = True


class RecordStoreError(EndpointUpdaterError):
    """The record store rejected a request."""


class RecordNotFoundError(RecordStoreError):
    pass


class RecordConflictError(RecordStoreError):
    transient = True


class RecordUnavailableError(RecordStoreError):
    transient = True


class PartialApplyError(EndpointUpdaterError):
    """Some facts were written (or removed) and some were not.

    Nothing is rolled back. ``failed`` maps each pending fact label to the
    error it hit, ``applied`` lists the labels that went through.
    """

    def __init__(
        self,
        operation: str,
        namespace: str,
        service: str,
        failed: Dict[str, EndpointUpdaterError],
        applied: List[str],
    ):
        self.operation = operation
        self.namespace = namespace
        self.service = service
        self.failed = failed
        self.applied = applied
        super().__init__(
            f"{operation} on endpoints {namespace}/{service} failed for "
            f"{', '.join(failed)} ({len(applied)} of {len(applied) + len(failed)} succeeded)"
        )

    @property
    def transient(self) -> bool:  # type: ignore[override]
        return all(error.transient for error in self.failed.values())


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, EndpointUpdaterError) and exc.transient


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class AddressFact:
    """A workload identity paired with its resolved IPv4 address."""

    identity: str
    address: ipaddress.IPv4Address

    @property
    def label(self) -> str:
        """Name used in logs and errors; anonymous facts fall back to the address."""
        return self.identity or str(self.address)


def parse_ipv4(value: Any, *, source: str) -> ipaddress.IPv4Address:
    try:
        return ipaddress.IPv4Address(str(value).strip())
    except ValueError as e:
        raise InvalidAddressError(f"{source}: '{value}' is not an IPv4 address") from e


def increment_ipv4(address: ipaddress.IPv4Address) -> ipaddress.IPv4Address:
    """Return the next address in numeric order.

    The carry runs through all four octets, so ``10.0.0.255`` becomes
    ``10.0.1.0`` and ``255.255.255.255`` wraps to ``0.0.0.0``.
    """
    return ipaddress.IPv4Address((int(address) + 1) & 0xFFFFFFFF)


def ensure_unique_identities(facts: Sequence[AddressFact]) -> None:
    """Reject a lookup result that names the same workload twice."""
    seen: Dict[str, AddressFact] = {}
    for fact in facts:
        previous = seen.get(fact.label)
        if previous is not None:
            raise ResolutionError(
                f"duplicate identity '{fact.label}' ({previous.address} and {fact.address})"
            )
        seen[fact.label] = fact


# =============================================================================
# Address Provider Interface and Implementations
# =============================================================================


class AddressProvider(ABC):
    """Abstract base class for address providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def lookup(self) -> List[AddressFact]:
        """Resolve the address facts this provider knows about."""
        pass


class BridgeProvider(AddressProvider):
    """Derives the guest VM address from a bridge interface on the host.

    The network fabric (flannel) assigns addresses deterministically: the
    guest VM always holds the address directly after the bridge's own one.
    """

    def __init__(
        self,
        bridge_name: str,
        identity: str = "",
        interfaces: Optional[Callable[[], Mapping[str, Sequence[Any]]]] = None,
    ):
        if not bridge_name:
            raise ConfigurationError("bridge name must not be empty")
        self._bridge_name = bridge_name
        self._identity = identity
        self._interfaces = interfaces or psutil.net_if_addrs

    @property
    def name(self) -> str:
        return "bridge"

    def lookup(self) -> List[AddressFact]:
        addrs = self._interfaces().get(self._bridge_name)
        if addrs is None:
            raise InterfaceNotFoundError(f"network interface '{self._bridge_name}' not found")

        bridge_ip = _first_ipv4(addrs)
        if bridge_ip is None:
            raise NoAddressError(f"no IPv4 address bound to interface '{self._bridge_name}'")

        guest_ip = increment_ipv4(bridge_ip)
        logger.debug(f"Bridge '{self._bridge_name}' has {bridge_ip}, guest address is {guest_ip}")
        return [AddressFact(identity=self._identity, address=guest_ip)]


def _first_ipv4(addrs: Sequence[Any]) -> Optional[ipaddress.IPv4Address]:
    for addr in addrs:
        if getattr(addr, "family", None) != socket.AF_INET or not addr.address:
            continue
        try:
            return ipaddress.IPv4Address(addr.address)
        except ValueError:
            continue
    return None


class EnvProvider(AddressProvider):
    """Reads ``<prefix><pod-name>=<ipv4>`` variables from the environment."""

    def __init__(
        self,
        prefix: str = DEFAULT_ENV_PREFIX,
        pod_names: Sequence[str] = (),
        environ: Optional[Mapping[str, str]] = None,
    ):
        if not prefix:
            raise ConfigurationError("environment variable prefix must not be empty")
        self._prefix = prefix
        self._pod_names = tuple(pod_names)
        self._environ = environ

    @property
    def name(self) -> str:
        return "env"

    def lookup(self) -> List[AddressFact]:
        environ = dict(os.environ if self._environ is None else self._environ)

        matched: Dict[str, str] = {}
        if self._pod_names:
            for pod_name in self._pod_names:
                key = f"{self._prefix}{pod_name}"
                if key not in environ:
                    raise ResolutionError(
                        f"environment variable {key} for pod '{pod_name}' is not set"
                    )
                matched[pod_name] = environ[key]
        else:
            for key, value in environ.items():
                if key.startswith(self._prefix) and len(key) > len(self._prefix):
                    matched[key[len(self._prefix) :]] = value

        return [
            AddressFact(identity=pod_name, address=parse_ipv4(value, source=f"{self._prefix}{pod_name}"))
            for pod_name, value in sorted(matched.items())
        ]


class EtcdProvider(AddressProvider):
    """Lists ``<prefix>/<pod-name> = <ipv4>`` keys from etcd over HTTP."""

    def __init__(
        self,
        address: str,
        prefix: str,
        kind: str = "etcdv2",
        timeout_seconds: float = 10.0,
    ):
        if not address:
            raise ConfigurationError("etcd address must not be empty")
        if not prefix:
            raise ConfigurationError("etcd prefix must not be empty")
        if kind not in ETCD_KINDS:
            raise ConfigurationError(
                f"unsupported etcd kind '{kind}'. Supported kinds: {', '.join(ETCD_KINDS)}"
            )
        self._address = address.rstrip("/")
        # v2 keys always live below "/". A v3 range is a byte prefix, so it must end
        # at a separator or "/pods" would also match "/pods-old/x".
        if kind == "etcdv2":
            self._prefix = "/" + prefix.strip("/")
        else:
            self._prefix = prefix if prefix.endswith("/") else prefix + "/"
        self._kind = kind
        self._timeout = timeout_seconds
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "etcd"

    def lookup(self) -> List[AddressFact]:
        if self._kind == "etcdv3":
            pairs = self._list_v3()
        else:
            pairs = self._list_v2()

        facts: List[AddressFact] = []
        for key, value in pairs:
            identity = key[len(self._prefix) :].strip("/") if key.startswith(self._prefix) else ""
            if not identity:
                logger.warning(f"Skipping etcd key '{key}' without pod name below '{self._prefix}'")
                continue
            facts.append(AddressFact(identity=identity, address=parse_ipv4(value, source=key)))
        return sorted(facts, key=lambda f: f.identity)

    def _list_v2(self) -> List[Tuple[str, Any]]:
        data = self._request(
            "GET", f"{self._address}/v2/keys{self._prefix}", params={"recursive": "true"}
        )
        if data is None:
            logger.info(f"etcd prefix '{self._prefix}' does not exist")
            return []
        return list(_walk_v2_nodes(data.get("node") or {}))

    def _list_v3(self) -> List[Tuple[str, Any]]:
        raw_prefix = self._prefix.encode("utf-8")
        body = {
            "key": base64.b64encode(raw_prefix).decode("ascii"),
            "range_end": base64.b64encode(_prefix_range_end(raw_prefix)).decode("ascii"),
        }
        data = self._request("POST", f"{self._address}/v3/kv/range", json=body)
        if data is None:
            raise StoreUnavailableError(f"etcd at {self._address} has no v3 JSON gateway")

        kvs = data.get("kvs") or []
        if not isinstance(kvs, list):
            raise StoreUnavailableError(f"etcd at {self._address} returned malformed kvs: {kvs!r}")

        pairs: List[Tuple[str, Any]] = []
        for kv in kvs:
            try:
                key = _decode_b64_text(kv["key"])
            except (KeyError, TypeError, ValueError) as e:
                raise StoreUnavailableError(f"etcd at {self._address} returned a malformed key: {kv!r}") from e
            try:
                value = _decode_b64_text(kv.get("value", ""))
            except (TypeError, ValueError) as e:
                raise InvalidAddressError(f"{key}: value is not base64-encoded text") from e
            pairs.append((key, value))
        return pairs

    def _request(self, method: str, url: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        """Send a request to etcd; a 404 is returned as ``None``."""
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise StoreUnavailableError(f"etcd at {self._address} unreachable: {e}") from e

        status = response.status_code
        if status == 404:
            return None
        if status == 429 or status >= 500:
            raise StoreUnavailableError(f"etcd {method} {url} returned HTTP {status}")
        if status >= 400:
            raise ResolutionError(f"etcd {method} {url} rejected with HTTP {status}")

        try:
            data = response.json()
        except ValueError as e:
            raise StoreUnavailableError(f"etcd {method} {url} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise StoreUnavailableError(f"etcd {method} {url} returned {type(data).__name__}, expected an object")
        return data


def _decode_b64_text(value: Any) -> str:
    # binascii.Error and UnicodeDecodeError are both ValueErrors.
    return base64.b64decode(value, validate=True).decode("utf-8")


def _walk_v2_nodes(node: Any) -> Iterator[Tuple[str, Any]]:
    if not isinstance(node, dict):
        raise StoreUnavailableError(f"etcd returned a malformed node: {node!r}")
    if node.get("dir"):
        for child in node.get("nodes") or []:
            yield from _walk_v2_nodes(child)
    elif "key" in node:
        yield node["key"], node.get("value")


def _prefix_range_end(prefix: bytes) -> bytes:
    """Smallest key greater than every key starting with ``prefix``."""
    end = bytearray(prefix)
    for i in range(len(end) - 1, -1, -1):
        if end[i] < 0xFF:
            end[i] += 1
            return bytes(end[: i + 1])
    return b"\x00"


# =============================================================================
# Record Store Interface and Implementations
# =============================================================================


class RecordStore(ABC):
    """Abstract base class for the store holding services, endpoints and pods.

    Implementations raise RecordNotFoundError, RecordConflictError and
    RecordUnavailableError so the updater can tell those cases apart.
    """

    @abstractmethod
    def get_service(self, namespace: str, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_endpoints(self, namespace: str, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_endpoints(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update_endpoints(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update_pod(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        pass


class KubernetesRecordStore(RecordStore):
    """Kubernetes core/v1 API client."""

    def __init__(
        self,
        address: str,
        *,
        token: str = "",
        ca_file: str = "",
        cert_file: str = "",
        key_file: str = "",
        timeout_seconds: float = 10.0,
    ):
        self._url = address.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"
        if ca_file:
            self._session.verify = ca_file
        if cert_file and key_file:
            self._session.cert = (cert_file, key_file)

    @classmethod
    def from_config(
        cls,
        config: UpdaterConfig,
        environ: Optional[Mapping[str, str]] = None,
        service_account_dir: Path = SERVICE_ACCOUNT_DIR,
    ) -> "KubernetesRecordStore":
        """Build a client for either in-cluster or out-of-cluster access."""
        if not config.kubernetes_in_cluster:
            return cls(
                config.kubernetes_address or DEFAULT_KUBERNETES_ADDRESS,
                ca_file=config.kubernetes_tls_ca_file,
                cert_file=config.kubernetes_tls_crt_file,
                key_file=config.kubernetes_tls_key_file,
                timeout_seconds=config.request_timeout,
            )

        environ = os.environ if environ is None else environ
        address = config.kubernetes_address
        if not address:
            host = environ.get("KUBERNETES_SERVICE_HOST", "")
            port = environ.get("KUBERNETES_SERVICE_PORT", "443")
            if not host:
                raise ConfigurationError(
                    "KUBERNETES_SERVICE_HOST is not set; not running inside a cluster?"
                )
            if ":" in host:
                host = f"[{host}]"
            address = f"https://{host}:{port}"
        else:
            logger.debug("Using explicit API server address with in-cluster credentials")

        token_file = service_account_dir / "token"
        try:
            token = token_file.read_text("utf-8").strip()
        except OSError as e:
            raise ConfigurationError(f"cannot read service account token {token_file}: {e}") from e

        ca_file = config.kubernetes_tls_ca_file
        if not ca_file and (service_account_dir / "ca.crt").exists():
            ca_file = str(service_account_dir / "ca.crt")

        return cls(address, token=token, ca_file=ca_file, timeout_seconds=config.request_timeout)

    def get_service(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/v1/namespaces/{namespace}/services/{name}")

    def get_endpoints(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/v1/namespaces/{namespace}/endpoints/{name}")

    def create_endpoints(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", f"/api/v1/namespaces/{namespace}/endpoints", body)

    def update_endpoints(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        return self._request("PUT", f"/api/v1/namespaces/{namespace}/endpoints/{name}", body)

    def get_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/v1/namespaces/{namespace}/pods/{name}")

    def update_pod(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        return self._request("PUT", f"/api/v1/namespaces/{namespace}/pods/{name}", body)

    def _request(
        self, method: str, path: str, body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        try:
            response = self._session.request(
                method, f"{self._url}{path}", json=body, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise RecordUnavailableError(f"{method} {path}: {e}") from e

        status = response.status_code
        if status == 404:
            raise RecordNotFoundError(f"{method} {path}: not found")
        if status == 409:
            raise RecordConflictError(f"{method} {path}: {_status_message(response)}")
        if status == 429 or status >= 500:
            raise RecordUnavailableError(f"{method} {path}: {_status_message(response)}")
        if status >= 400:
            raise RecordStoreError(f"{method} {path}: {_status_message(response)}")

        try:
            return response.json()
        except ValueError as e:
            raise RecordUnavailableError(f"{method} {path}: invalid JSON response") from e


def _status_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("message"):
        return f"HTTP {response.status_code}: {data['message']}"
    return f"HTTP {response.status_code}"


# =============================================================================
# Record Updater
# =============================================================================


class RecordUpdater:
    """Adds and removes address facts on a service's Endpoints record.

    Entries are patched in place: an entry for a fact replaces any previous
    entry of the same workload and leaves every other entry alone. Facts are
    processed one by one, so a failure can leave a partially applied set;
    that is reported as PartialApplyError and never rolled back.
    """

    def __init__(self, store: RecordStore, *, create_missing: bool = True, conflict_retries: int = 5):
        self._store = store
        self._create_missing = create_missing
        self._conflict_retries = max(1, conflict_retries)

    def apply(self, namespace: str, service: str, facts: Sequence[AddressFact]) -> None:
        self._for_each_fact("apply", namespace, service, facts, self._apply_fact)

    def retract(self, namespace: str, service: str, facts: Sequence[AddressFact]) -> None:
        self._for_each_fact("retract", namespace, service, facts, self._retract_fact)

    def annotate(self, namespace: str, identity: str, fact: AddressFact, service: str) -> None:
        """Record the resolved address and owning service on the pod.

        The pod is written back with the resourceVersion it was read with, so a
        concurrent change makes the write fail with a conflict instead of being
        overwritten; the pod is then read again.
        """
        if not identity:
            raise ConfigurationError(f"cannot annotate pod for anonymous address {fact.address}")

        desired = {ADDRESS_ANNOTATION: str(fact.address), SERVICE_ANNOTATION: service}
        for _ in range(self._conflict_retries):
            pod = self._store.get_pod(namespace, identity)
            metadata = pod.setdefault("metadata", {})
            annotations = metadata.get("annotations") or {}
            if all(annotations.get(k) == v for k, v in desired.items()):
                logger.debug(f"Pod {namespace}/{identity} already annotated with {fact.address}")
                return
            annotations.update(desired)
            metadata["annotations"] = annotations
            try:
                self._store.update_pod(namespace, pod)
            except RecordConflictError:
                logger.debug(f"Pod {namespace}/{identity} changed while annotating, retrying")
                continue
            logger.info(f"Annotated pod {namespace}/{identity} with {fact.address} for service '{service}'")
            return

        raise RecordConflictError(
            f"pod {namespace}/{identity} kept changing; gave up annotating after "
            f"{self._conflict_retries} attempts"
        )

    def _for_each_fact(
        self,
        operation: str,
        namespace: str,
        service: str,
        facts: Sequence[AddressFact],
        action: Callable[[str, str, AddressFact], None],
    ) -> None:
        applied: List[str] = []
        failed: Dict[str, EndpointUpdaterError] = {}
        for fact in facts:
            try:
                action(namespace, service, fact)
            except EndpointUpdaterError as e:
                logger.error(
                    f"{operation} of {fact.label} -> {fact.address} on endpoints "
                    f"{namespace}/{service} failed: {e}"
                )
                failed[fact.label] = e
                continue
            applied.append(fact.label)

        if failed:
            raise PartialApplyError(operation, namespace, service, failed=failed, applied=applied)

    def _apply_fact(self, namespace: str, service: str, fact: AddressFact) -> None:
        def ports() -> List[Dict[str, Any]]:
            return self._service_ports(namespace, service)

        for _ in range(self._conflict_retries):
            try:
                endpoints = self._store.get_endpoints(namespace, service)
            except RecordNotFoundError:
                if not self._create_missing:
                    raise RecordNotFoundError(
                        f"endpoints {namespace}/{service} not found and creation is disabled"
                    )
                body = _new_endpoints(namespace, service)
                _merge_address(body, fact, namespace, ports)
                try:
                    self._store.create_endpoints(namespace, body)
                except RecordConflictError:
                    # Created by someone else in the meantime; merge into theirs.
                    logger.debug(f"Endpoints {namespace}/{service} already exist, merging")
                    continue
                logger.info(
                    f"Created endpoints {namespace}/{service} with {fact.label} -> {fact.address}"
                )
                return

            if not _merge_address(endpoints, fact, namespace, ports):
                logger.info(f"Endpoints {namespace}/{service} already contain {fact.label} -> {fact.address}")
                return
            try:
                self._store.update_endpoints(namespace, endpoints)
            except RecordConflictError:
                logger.debug(f"Endpoints {namespace}/{service} changed while updating, retrying")
                continue
            logger.info(f"Added {fact.label} -> {fact.address} to endpoints {namespace}/{service}")
            return

        raise RecordConflictError(
            f"endpoints {namespace}/{service} kept changing; gave up adding {fact.label} "
            f"after {self._conflict_retries} attempts"
        )

    def _retract_fact(self, namespace: str, service: str, fact: AddressFact) -> None:
        for _ in range(self._conflict_retries):
            try:
                endpoints = self._store.get_endpoints(namespace, service)
            except RecordNotFoundError:
                logger.info(f"Endpoints {namespace}/{service} not found, nothing to remove for {fact.label}")
                return

            if not _remove_address(endpoints, fact):
                logger.info(f"Endpoints {namespace}/{service} do not contain {fact.label} -> {fact.address}")
                return
            try:
                self._store.update_endpoints(namespace, endpoints)
            except RecordNotFoundError:
                logger.info(f"Endpoints {namespace}/{service} were deleted, nothing to remove")
                return
            except RecordConflictError:
                logger.debug(f"Endpoints {namespace}/{service} changed while updating, retrying")
                continue
            logger.info(f"Removed {fact.label} -> {fact.address} from endpoints {namespace}/{service}")
            return

        raise RecordConflictError(
            f"endpoints {namespace}/{service} kept changing; gave up removing {fact.label} "
            f"after {self._conflict_retries} attempts"
        )

    def _service_ports(self, namespace: str, service: str) -> List[Dict[str, Any]]:
        try:
            svc = self._store.get_service(namespace, service)
        except RecordNotFoundError as e:
            raise RecordNotFoundError(f"service {namespace}/{service} not found") from e

        ports: List[Dict[str, Any]] = []
        for port in (svc.get("spec") or {}).get("ports") or []:
            ports.append({k: port[k] for k in ("name", "port", "protocol", "appProtocol") if k in port})
        return ports


def _new_endpoints(namespace: str, service: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Endpoints",
        "metadata": {
            "name": service,
            "namespace": namespace,
            "labels": {MANAGED_BY_LABEL: "k8s-endpoint-updater"},
        },
        "subsets": [],
    }


def _address_entry(fact: AddressFact, namespace: str) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"ip": str(fact.address)}
    if fact.identity:
        entry["targetRef"] = {"kind": "Pod", "name": fact.identity, "namespace": namespace}
    return entry


def _same_workload(entry: Dict[str, Any], fact: AddressFact) -> bool:
    if fact.identity:
        return (entry.get("targetRef") or {}).get("name") == fact.identity
    return entry.get("ip") == str(fact.address)


def _merge_address(
    endpoints: Dict[str, Any],
    fact: AddressFact,
    namespace: str,
    ports: Callable[[], List[Dict[str, Any]]],
) -> bool:
    """Make ``fact`` the only entry of its workload. Returns True if changed."""
    subsets: List[Dict[str, Any]] = endpoints.get("subsets") or []
    ip = str(fact.address)
    present = False
    changed = False

    for subset in subsets:
        kept = []
        for entry in subset.get("addresses") or []:
            if _same_workload(entry, fact):
                if entry.get("ip") == ip and not present:
                    present = True
                    kept.append(entry)
                else:
                    changed = True
                continue
            kept.append(entry)
        subset["addresses"] = kept
        # A workload is listed once, and a freshly applied address is ready.
        if subset.get("notReadyAddresses"):
            not_ready = [e for e in subset["notReadyAddresses"] if not _same_workload(e, fact)]
            changed = changed or len(not_ready) != len(subset["notReadyAddresses"])
            subset["notReadyAddresses"] = not_ready

    if not present:
        if not subsets:
            subsets.append({"addresses": [], "ports": ports()})
        subsets[0].setdefault("addresses", []).append(_address_entry(fact, namespace))
        changed = True

    endpoints["subsets"] = _drop_empty_subsets(subsets)
    return changed


def _remove_address(endpoints: Dict[str, Any], fact: AddressFact) -> bool:
    """Drop the entry of ``fact`` if it still carries the fact's address."""
    subsets: List[Dict[str, Any]] = endpoints.get("subsets") or []
    ip = str(fact.address)
    changed = False

    for subset in subsets:
        kept = []
        for entry in subset.get("addresses") or []:
            if _same_workload(entry, fact) and entry.get("ip") == ip:
                changed = True
                continue
            kept.append(entry)
        subset["addresses"] = kept
        if subset.get("notReadyAddresses"):
            not_ready = [
                e for e in subset["notReadyAddresses"] if not (_same_workload(e, fact) and e.get("ip") == ip)
            ]
            changed = changed or len(not_ready) != len(subset["notReadyAddresses"])
            subset["notReadyAddresses"] = not_ready

    endpoints["subsets"] = _drop_empty_subsets(subsets)
    return changed


def _drop_empty_subsets(subsets: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [s for s in subsets if s.get("addresses") or s.get("notReadyAddresses")]


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient failures.

    Only errors flagged ``transient`` are retried; anything else, and the last
    transient error once the budget is spent, is raised to the caller.
    """

    max_attempts: int = 10
    initial_interval: float = 0.5
    max_interval: float = 60.0
    max_elapsed: float = 0.0
    sleep: Callable[[float], None] = time.sleep

    def call(self, operation: str, fn: Callable[[], T]) -> T:
        stop = stop_after_attempt(self.max_attempts)
        if self.max_elapsed > 0:
            stop = stop | stop_after_delay(self.max_elapsed)

        retrying = Retrying(
            stop=stop,
            wait=wait_exponential(multiplier=self.initial_interval, max=self.max_interval),
            retry=retry_if_exception(_is_transient),
            before_sleep=lambda state: self._log_retry(operation, state),
            sleep=self.sleep,
            reraise=True,
        )
        return retrying(fn)

    def _log_retry(self, operation: str, state: RetryCallState) -> None:
        delay = state.next_action.sleep if state.next_action else 0.0
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"{operation} failed (attempt {state.attempt_number}/{self.max_attempts}), "
            f"retrying in {delay:.1f}s: {error}"
        )


# =============================================================================
# Termination Signal
# =============================================================================


class TerminationSignal:
    """One-shot wait for a process termination signal.

    The first signal wins. Repeated signals are logged and ignored so that a
    second SIGTERM cannot cut the retraction short.
    """

    def __init__(self, signals: Sequence[int] = (signal.SIGTERM, signal.SIGINT)):
        self._signals = tuple(signals)
        self._event = threading.Event()
        self._previous: Dict[int, Any] = {}
        self.received: Optional[int] = None

    def install(self) -> None:
        for signum in self._signals:
            self._previous[signum] = signal.signal(signum, self._handle)

    def restore(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def _handle(self, signum: int, frame: Any) -> None:
        self.trigger(signum)

    def trigger(self, signum: int) -> None:
        if self.received is not None:
            logger.info(f"Ignoring repeated signal {_signal_name(signum)}, shutdown already in progress")
            return
        self.received = signum
        logger.info(f"Received termination signal {_signal_name(signum)}")
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, poll_interval: float = 1.0) -> Optional[int]:
        while not self._event.wait(poll_interval):
            pass
        return self.received


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


# =============================================================================
# Lifecycle Controller
# =============================================================================


class LifecyclePhase(Enum):
    RESOLVING = "resolving"
    APPLYING = "applying"
    WAITING = "waiting"
    RETRACTING = "retracting"
    DONE = "done"


class ExitCode(IntEnum):
    OK = 0
    CONFIG_FAILED = 1
    RESOLVE_FAILED = 2
    APPLY_FAILED = 3
    RETRACT_FAILED = 4


class LifecycleController:
    """Resolve, apply, wait for termination, retract.

    Each phase runs at most once. A failure while resolving or applying ends
    the run without touching the endpoints again; whatever a failed apply
    managed to write stays in place.
    """

    def __init__(
        self,
        *,
        provider: AddressProvider,
        updater: RecordUpdater,
        namespace: str,
        service: str,
        retry_policy: RetryPolicy,
        termination: TerminationSignal,
        annotate_pods: bool = False,
    ):
        self._provider = provider
        self._updater = updater
        self._namespace = namespace
        self._service = service
        self._retry = retry_policy
        self._termination = termination
        self._annotate_pods = annotate_pods
        self.phase = LifecyclePhase.RESOLVING
        self.facts: List[AddressFact] = []

    def run(self) -> ExitCode:
        endpoints = f"{self._namespace}/{self._service}"

        try:
            self.facts = self._resolve()
        except EndpointUpdaterError as e:
            return self._fail(
                ExitCode.RESOLVE_FAILED, f"Address lookup with {self._provider.name} provider failed", e
            )

        self.phase = LifecyclePhase.APPLYING
        try:
            self._apply()
        except EndpointUpdaterError as e:
            return self._fail(ExitCode.APPLY_FAILED, f"Adding addresses to endpoints {endpoints} failed", e)
        logger.info(f"Added {len(self.facts)} address(es) to endpoints {endpoints}")

        self.phase = LifecyclePhase.WAITING
        logger.info("Waiting for termination signal")
        self._termination.wait()

        self.phase = LifecyclePhase.RETRACTING
        try:
            self._retry.call(
                f"retract from endpoints {endpoints}",
                lambda: self._updater.retract(self._namespace, self._service, self.facts),
            )
        except EndpointUpdaterError as e:
            return self._fail(
                ExitCode.RETRACT_FAILED, f"Removing addresses from endpoints {endpoints} failed", e
            )
        logger.info(f"Removed {len(self.facts)} address(es) from endpoints {endpoints}")

        self.phase = LifecyclePhase.DONE
        return ExitCode.OK

    def _resolve(self) -> List[AddressFact]:
        facts = self._retry.call(f"lookup with {self._provider.name} provider", self._provider.lookup)
        ensure_unique_identities(facts)

        if not facts:
            logger.warning(f"{self._provider.name} provider found no addresses for service '{self._service}'")
        for fact in facts:
            logger.info(f"Found address {fact.address} for '{fact.label}' of service '{self._service}'")
        return facts

    def _apply(self) -> None:
        self._retry.call(
            f"apply to endpoints {self._namespace}/{self._service}",
            lambda: self._updater.apply(self._namespace, self._service, self.facts),
        )
        if not self._annotate_pods:
            return

        for fact in self.facts:
            if not fact.identity:
                logger.debug(f"Not annotating anonymous address {fact.address}")
                continue
            self._retry.call(
                f"annotate pod {self._namespace}/{fact.identity}",
                lambda fact=fact: self._updater.annotate(self._namespace, fact.identity, fact, self._service),
            )

    def _fail(self, code: ExitCode, message: str, error: EndpointUpdaterError) -> ExitCode:
        logger.error(f"{message}: {error}")
        if isinstance(error, PartialApplyError):
            logger.error(
                f"Pending identities: {', '.join(error.failed)}; "
                f"completed: {', '.join(error.applied) or 'none'}"
            )
        self.phase = LifecyclePhase.DONE
        return code


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class UpdaterConfig:
    service: str = ""
    namespace: str = "default"
    provider_kind: str = "env"
    bridge_name: str = ""
    bridge_identity: str = ""
    env_prefix: str = DEFAULT_ENV_PREFIX
    pod_names: Tuple[str, ...] = ()
    etcd_address: str = ""
    etcd_kind: str = "etcdv2"
    etcd_prefix: str = ""
    kubernetes_address: str = ""
    kubernetes_in_cluster: bool = False
    kubernetes_tls_ca_file: str = ""
    kubernetes_tls_crt_file: str = ""
    kubernetes_tls_key_file: str = ""
    create_endpoints: bool = True
    annotate_pods: bool = False
    retry_max_attempts: int = 10
    retry_initial_interval: float = 0.5
    retry_max_interval: float = 60.0
    retry_max_elapsed: float = 0.0
    request_timeout: float = 10.0
    log_level: str = "INFO"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_interval=self.retry_initial_interval,
            max_interval=self.retry_max_interval,
            max_elapsed=self.retry_max_elapsed,
        )


ENV_VARS: Dict[str, str] = {
    "service": "SERVICE_NAME",
    "namespace": "SERVICE_NAMESPACE",
    "provider_kind": "PROVIDER_KIND",
    "bridge_name": "BRIDGE_NAME",
    "bridge_identity": "BRIDGE_IDENTITY",
    "env_prefix": "ENV_PREFIX",
    "pod_names": "POD_NAMES",
    "etcd_address": "ETCD_ADDRESS",
    "etcd_kind": "ETCD_KIND",
    "etcd_prefix": "ETCD_PREFIX",
    "kubernetes_address": "KUBERNETES_ADDRESS",
    "kubernetes_in_cluster": "KUBERNETES_IN_CLUSTER",
    "kubernetes_tls_ca_file": "KUBERNETES_TLS_CA_FILE",
    "kubernetes_tls_crt_file": "KUBERNETES_TLS_CRT_FILE",
    "kubernetes_tls_key_file": "KUBERNETES_TLS_KEY_FILE",
    "create_endpoints": "CREATE_ENDPOINTS",
    "annotate_pods": "ANNOTATE_PODS",
    "retry_max_attempts": "RETRY_MAX_ATTEMPTS",
    "retry_initial_interval": "RETRY_INITIAL_INTERVAL",
    "retry_max_interval": "RETRY_MAX_INTERVAL",
    "retry_max_elapsed": "RETRY_MAX_ELAPSED",
    "request_timeout": "REQUEST_TIMEOUT_SECONDS",
    "log_level": "LOG_LEVEL",
}


def load_config(
    environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None
) -> UpdaterConfig:
    """Build the configuration from an optional YAML file and the environment.

    Environment variables win over file values; unset values keep their
    defaults.
    """
    environ = os.environ if environ is None else environ
    path = config_path or environ.get("CONFIG_PATH", "")

    raw: Dict[str, Any] = {}
    if path:
        raw.update(_load_config_file(path))
    for field_name, env_name in ENV_VARS.items():
        if env_name in environ:
            raw[field_name] = environ[env_name]

    values: Dict[str, Any] = {}
    for f in fields(UpdaterConfig):
        if f.name in raw:
            values[f.name] = _coerce(f.name, raw[f.name], f.default)
    return UpdaterConfig(**values)


def _load_config_file(path: str) -> Dict[str, Any]:
    config_file = Path(path)
    if not config_file.is_file():
        raise ConfigurationError(f"config file {path} not found")
    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"failed to load config from {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping")

    known = {f.name for f in fields(UpdaterConfig)}
    unknown = sorted(str(k) for k in data if k not in known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in {path}: {', '.join(unknown)}")
    return {k: v for k, v in data.items() if k in known}


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return _parse_bool(value, default=default)
    if isinstance(default, tuple):
        return _parse_list(value)
    if isinstance(default, (int, float)):
        try:
            return type(default)(str(value).strip())
        except ValueError as e:
            raise ConfigurationError(f"{name} must be a number, got '{value}'") from e
    return "" if value is None else str(value).strip()


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    return tuple(str(item).strip() for item in items if str(item).strip())


def validate_config(config: UpdaterConfig) -> List[str]:
    """Return every configuration problem, empty when the config is usable."""
    errors: List[str] = []

    if not config.service:
        errors.append("SERVICE_NAME is required")
    if not config.namespace:
        errors.append("SERVICE_NAMESPACE must not be empty")

    if config.provider_kind == "bridge":
        if not config.bridge_name:
            errors.append("BRIDGE_NAME is required when PROVIDER_KIND=bridge")
        if config.annotate_pods and not config.bridge_identity:
            errors.append("ANNOTATE_PODS with PROVIDER_KIND=bridge requires BRIDGE_IDENTITY")
    elif config.provider_kind == "env":
        if not config.env_prefix:
            errors.append("ENV_PREFIX must not be empty when PROVIDER_KIND=env")
    elif config.provider_kind == "etcd":
        if not config.etcd_address:
            errors.append("ETCD_ADDRESS is required when PROVIDER_KIND=etcd")
        if not config.etcd_prefix:
            errors.append("ETCD_PREFIX is required when PROVIDER_KIND=etcd")
        if config.etcd_kind not in ETCD_KINDS:
            errors.append(f"Unsupported ETCD_KIND: {config.etcd_kind}. Supported: {', '.join(ETCD_KINDS)}")
    else:
        errors.append(
            f"Unsupported PROVIDER_KIND: {config.provider_kind}. Supported: {', '.join(PROVIDER_KINDS)}"
        )

    if bool(config.kubernetes_tls_crt_file) != bool(config.kubernetes_tls_key_file):
        errors.append("KUBERNETES_TLS_CRT_FILE and KUBERNETES_TLS_KEY_FILE must be set together")

    if config.retry_max_attempts < 1:
        errors.append("RETRY_MAX_ATTEMPTS must be at least 1")
    if config.retry_initial_interval <= 0 or config.retry_max_interval <= 0:
        errors.append("RETRY_INITIAL_INTERVAL and RETRY_MAX_INTERVAL must be positive")
    if config.retry_max_elapsed < 0:
        errors.append("RETRY_MAX_ELAPSED must not be negative")
    if config.request_timeout <= 0:
        errors.append("REQUEST_TIMEOUT_SECONDS must be positive")
    if config.log_level.upper() not in LOG_LEVELS:
        errors.append(f"Unsupported LOG_LEVEL: {config.log_level}. Supported: {', '.join(LOG_LEVELS)}")

    return errors


# =============================================================================
# Provider Registry
# =============================================================================


def create_provider(config: UpdaterConfig) -> AddressProvider:
    """Factory function to create the configured address provider."""
    if config.provider_kind == "bridge":
        return BridgeProvider(config.bridge_name, identity=config.bridge_identity)
    if config.provider_kind == "env":
        return EnvProvider(config.env_prefix, pod_names=config.pod_names)
    if config.provider_kind == "etcd":
        return EtcdProvider(
            config.etcd_address,
            config.etcd_prefix,
            kind=config.etcd_kind,
            timeout_seconds=config.request_timeout,
        )
    raise ConfigurationError(
        f"Unsupported provider: '{config.provider_kind}'. Supported providers: {', '.join(PROVIDER_KINDS)}"
    )


# =============================================================================
# Main
# =============================================================================


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="k8s-endpoint-updater",
        description="Keep a workload address registered in Kubernetes endpoints while running.",
    )
    parser.add_argument("--config", default=None, help="YAML config file (overrides CONFIG_PATH)")
    parser.add_argument("--log-level", default=None, help="Log level (overrides LOG_LEVEL)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    try:
        config = load_config(config_path=args.config)
    except ConfigurationError as e:
        _setup_logging(args.log_level or "INFO")
        logger.error(f"Configuration error: {e}")
        sys.exit(ExitCode.CONFIG_FAILED)

    if args.log_level:
        config = replace(config, log_level=args.log_level)
    _setup_logging(config.log_level)

    errors = validate_config(config)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(ExitCode.CONFIG_FAILED)

    logger.info(
        f"k8s-endpoint-updater {__version__}: {config.provider_kind} -> "
        f"endpoints {config.namespace}/{config.service}"
    )

    # Installed before the lookup so a signal arriving during apply is not lost.
    termination = TerminationSignal()
    termination.install()
    try:
        provider = create_provider(config)
        store = KubernetesRecordStore.from_config(config)
        controller = LifecycleController(
            provider=provider,
            updater=RecordUpdater(store, create_missing=config.create_endpoints),
            namespace=config.namespace,
            service=config.service,
            retry_policy=config.retry_policy(),
            termination=termination,
            annotate_pods=config.annotate_pods,
        )
        exit_code = controller.run()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        exit_code = ExitCode.CONFIG_FAILED
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        termination.restore()

    sys.exit(int(exit_code))


if __name__ == "__main__":
    main()
