"""Shared test doubles."""

import copy
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest

from k8s_endpoint_updater.cli import (
    RecordConflictError,
    RecordNotFoundError,
    RecordStore,
)

Key = Tuple[str, str]


class MockRecordStore(RecordStore):
    """In-memory record store with call tracking and failure injection.

    Objects are copied on the way in and out, like a real API server, and
    writes carrying a stale resourceVersion are rejected with a conflict.
    """

    def __init__(self) -> None:
        self.services: Dict[Key, Dict[str, Any]] = {}
        self.endpoints: Dict[Key, Dict[str, Any]] = {}
        self.pods: Dict[Key, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        # method name -> errors raised by the next calls of that method
        self.errors: Dict[str, List[Exception]] = {}
        # ip -> errors raised by the next endpoint writes that add this ip
        self.add_errors: Dict[str, List[Exception]] = {}
        # called after a read and before the write it precedes
        self.before_write: Optional[Callable[[str, Key], None]] = None
        self._version = 0

    # -- setup helpers -------------------------------------------------------

    def add_service(self, namespace: str, name: str, ports: List[Dict[str, Any]]) -> None:
        self.services[(namespace, name)] = {
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"ports": ports},
        }

    def add_endpoints(self, namespace: str, name: str, subsets: List[Dict[str, Any]]) -> None:
        self.endpoints[(namespace, name)] = self._stamp(
            {"metadata": {"name": name, "namespace": namespace}, "subsets": subsets}
        )

    def add_pod(self, namespace: str, name: str, annotations: Optional[Dict[str, str]] = None) -> None:
        metadata: Dict[str, Any] = {"name": name, "namespace": namespace}
        if annotations is not None:
            metadata["annotations"] = annotations
        self.pods[(namespace, name)] = self._stamp({"metadata": metadata})

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.errors.setdefault(method, []).extend(errors)

    def fail_adding(self, ip: str, *errors: Exception) -> None:
        self.add_errors.setdefault(ip, []).extend(errors)

    def ips(self, namespace: str, name: str) -> List[str]:
        record = self.endpoints.get((namespace, name), {})
        return sorted(_ips(record))

    def writes(self) -> List[Tuple[str, str, str]]:
        return [c for c in self.calls if c[0] in ("create_endpoints", "update_endpoints", "update_pod")]

    # -- RecordStore ---------------------------------------------------------

    def get_service(self, namespace: str, name: str) -> Dict[str, Any]:
        self._enter("get_service", namespace, name)
        return self._read(self.services, namespace, name)

    def get_endpoints(self, namespace: str, name: str) -> Dict[str, Any]:
        self._enter("get_endpoints", namespace, name)
        return self._read(self.endpoints, namespace, name)

    def create_endpoints(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        self._enter("create_endpoints", namespace, name)
        self._check_adds(namespace, name, body)
        if (namespace, name) in self.endpoints:
            raise RecordConflictError(f"endpoints {namespace}/{name} already exist")
        self.endpoints[(namespace, name)] = self._stamp(copy.deepcopy(body))
        return copy.deepcopy(self.endpoints[(namespace, name)])

    def update_endpoints(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        self._enter("update_endpoints", namespace, name)
        self._check_adds(namespace, name, body)
        return self._write(self.endpoints, namespace, name, body)

    def get_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        self._enter("get_pod", namespace, name)
        return self._read(self.pods, namespace, name)

    def update_pod(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        self._enter("update_pod", namespace, name)
        return self._write(self.pods, namespace, name, body)

    # -- internals -----------------------------------------------------------

    def _enter(self, method: str, namespace: str, name: str) -> None:
        self.calls.append((method, namespace, name))
        if not method.startswith("get_") and self.before_write:
            self.before_write(method, (namespace, name))
        queue = self.errors.get(method)
        if queue:
            raise queue.pop(0)

    def _check_adds(self, namespace: str, name: str, body: Dict[str, Any]) -> None:
        current: Set[str] = set(_ips(self.endpoints.get((namespace, name), {})))
        for ip in sorted(set(_ips(body)) - current):
            queue = self.add_errors.get(ip)
            if queue:
                raise queue.pop(0)

    def _read(self, table: Dict[Key, Dict[str, Any]], namespace: str, name: str) -> Dict[str, Any]:
        if (namespace, name) not in table:
            raise RecordNotFoundError(f"{namespace}/{name} not found")
        return copy.deepcopy(table[(namespace, name)])

    def _write(
        self, table: Dict[Key, Dict[str, Any]], namespace: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        current = table.get((namespace, name))
        if current is None:
            raise RecordNotFoundError(f"{namespace}/{name} not found")
        sent = body.get("metadata", {}).get("resourceVersion")
        if sent is not None and sent != current["metadata"]["resourceVersion"]:
            raise RecordConflictError(f"{namespace}/{name} has been modified")
        table[(namespace, name)] = self._stamp(copy.deepcopy(body))
        return copy.deepcopy(table[(namespace, name)])

    def _stamp(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        self._version += 1
        obj.setdefault("metadata", {})["resourceVersion"] = str(self._version)
        return obj


def _ips(record: Dict[str, Any]) -> List[str]:
    return [
        entry["ip"]
        for subset in record.get("subsets") or []
        for entry in subset.get("addresses") or []
    ]


@pytest.fixture
def record_store() -> MockRecordStore:
    return MockRecordStore()
