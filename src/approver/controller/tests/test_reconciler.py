"""
测试 reconciler.py：仅通过 reconcile(key) 公开接口测试各个分支。
"""

import pytest

from src.approver.controller.reconciler import Reconciler
from src.approver.csr.constants import APPROVAL_MESSAGE, APPROVED_CONDITION
from src.approver.csr.schemas import CSRCondition, DecisionKind
from src.approver.errors import ApprovalUpdateError, MachineAPIUnavailableError, StoreError
from src.approver.kube.informer import CSRStore


class FakeCSRClient:
    def __init__(self, error: Exception | None = None):
        self.updated = []
        self.error = error

    def update_approval(self, csr):
        if self.error is not None:
            raise self.error
        self.updated.append(csr)


class FakeMachineClient:
    def __init__(self, machines=None, error: Exception | None = None):
        self.machines = machines
        self.error = error
        self.namespaces = []

    def list_machines(self, namespace):
        self.namespaces.append(namespace)
        if self.error is not None:
            raise self.error
        return self.machines


@pytest.fixture
def good_csr(node_csr, csr_pem):
    return node_csr(request=csr_pem("system:node:worker-7", dns_names=["worker-7.cluster.local"]))


def _reconciler(store, csr_client, machine_client):
    return Reconciler(store, csr_client, machine_client, machine_namespace="openshift-machine-api")


def test_approves_with_san_validation(good_csr, worker_machines):
    store = CSRStore()
    store.add(good_csr)
    csr_client = FakeCSRClient()
    machine_client = FakeMachineClient(worker_machines)

    decision = _reconciler(store, csr_client, machine_client).reconcile(good_csr.key)

    assert decision.kind is DecisionKind.APPROVE
    assert decision.message == APPROVAL_MESSAGE
    assert "no SAN validation" not in decision.message
    assert machine_client.namespaces == ["openshift-machine-api"]
    assert len(csr_client.updated) == 1
    updated = csr_client.updated[0]
    assert [c.type for c in updated.conditions] == [APPROVED_CONDITION]
    assert updated.conditions[0].reason == "NodeCSRApprove"
    # 只追加条件，不修改其他字段
    assert updated.model_dump(exclude={"conditions"}) == good_csr.model_dump(exclude={"conditions"})
    # 缓存中的对象不受影响
    cached, _ = store.get_by_key(good_csr.key)
    assert cached.conditions == []


def test_rejects_spoofed_san_without_mutation(node_csr, csr_pem, worker_machines):
    evil = node_csr(request=csr_pem("system:node:worker-7", dns_names=["worker-7-evil.cluster.local"]))
    store = CSRStore()
    store.add(evil)
    csr_client = FakeCSRClient()

    decision = _reconciler(store, csr_client, FakeMachineClient(worker_machines)).reconcile(evil.key)

    assert decision.kind is DecisionKind.SKIP
    assert decision.reason == "dns_name_mismatch"
    assert csr_client.updated == []


def test_missing_object_is_noop():
    csr_client = FakeCSRClient()
    decision = _reconciler(CSRStore(), csr_client, FakeMachineClient()).reconcile("gone")
    assert decision.kind is DecisionKind.SKIP
    assert decision.reason == "not_found"
    assert csr_client.updated == []


def test_already_approved_is_idempotent(good_csr, worker_machines):
    approved = good_csr.model_copy(
        update={"conditions": [CSRCondition(type=APPROVED_CONDITION, reason="Manual")]}
    )
    store = CSRStore()
    store.add(approved)
    csr_client = FakeCSRClient()
    machine_client = FakeMachineClient(worker_machines)
    reconciler = _reconciler(store, csr_client, machine_client)

    for _ in range(2):
        decision = reconciler.reconcile(approved.key)
        assert decision.kind is DecisionKind.SKIP
        assert decision.reason == "already_approved"
    assert csr_client.updated == []
    assert machine_client.namespaces == []


def test_unparseable_request_is_not_retried(node_csr, worker_machines):
    broken = node_csr(request=b"garbage")
    store = CSRStore()
    store.add(broken)
    csr_client = FakeCSRClient()

    decision = _reconciler(store, csr_client, FakeMachineClient(worker_machines)).reconcile(broken.key)

    assert decision.kind is DecisionKind.SKIP
    assert decision.reason == "parse_error"
    assert not decision.is_error
    assert csr_client.updated == []


def test_degraded_approval_when_inventory_unavailable(good_csr):
    store = CSRStore()
    store.add(good_csr)
    csr_client = FakeCSRClient()
    machine_client = FakeMachineClient(error=MachineAPIUnavailableError("connection refused"))

    decision = _reconciler(store, csr_client, machine_client).reconcile(good_csr.key)

    assert decision.kind is DecisionKind.APPROVE
    assert "no SAN validation" in decision.message
    assert "no SAN validation" in csr_client.updated[0].conditions[-1].message


def test_degraded_mode_still_rejects_bad_identity(node_csr, csr_pem):
    bad = node_csr(
        username="system:node:worker-7",
        groups=["system:authenticated", "system:serviceaccounts"],
        request=csr_pem("system:node:worker-7"),
    )
    store = CSRStore()
    store.add(bad)
    csr_client = FakeCSRClient()
    machine_client = FakeMachineClient(error=MachineAPIUnavailableError("timeout"))

    decision = _reconciler(store, csr_client, machine_client).reconcile(bad.key)

    assert decision.kind is DecisionKind.SKIP
    assert decision.reason == "missing_groups"
    assert csr_client.updated == []


def test_empty_inventory_is_rejection_not_degraded(good_csr):
    from src.approver.csr.schemas import MachineList

    store = CSRStore()
    store.add(good_csr)
    csr_client = FakeCSRClient()

    decision = _reconciler(store, csr_client, FakeMachineClient(MachineList())).reconcile(good_csr.key)

    assert decision.kind is DecisionKind.SKIP
    assert decision.reason == "invalid_request"
    assert csr_client.updated == []


def test_persist_failure_is_transient(good_csr, worker_machines):
    store = CSRStore()
    store.add(good_csr)
    err = ApprovalUpdateError("409 conflict")
    csr_client = FakeCSRClient(error=err)

    decision = _reconciler(store, csr_client, FakeMachineClient(worker_machines)).reconcile(good_csr.key)

    assert decision.is_error
    assert decision.error is err


def test_store_failure_is_transient():
    class BrokenStore:
        def get_by_key(self, key):
            raise StoreError("index corrupted")

    decision = _reconciler(BrokenStore(), FakeCSRClient(), FakeMachineClient()).reconcile("k")
    assert decision.is_error
    assert isinstance(decision.error, StoreError)
