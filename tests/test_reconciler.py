from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

import pytest

from capaws.awsmachine.reconciler import (
    ANNOTATION_CLUSTER_INFRASTRUCTURE_READY,
    MACHINE_FINALIZER,
    UPDATE_MACHINE_ERROR,
    VALUE_READY,
    WAIT_FOR_BOOTSTRAP_DATA,
    WAIT_FOR_CLUSTER_INFRASTRUCTURE_READY,
    AWSMachineSpec,
    Instance,
    ReconcileAWSMachine,
    RequeueAfterError,
    ResourceReference,
    Result,
    is_machine_outdated,
)
from capaws.awsmachine.tags import TAGS_LAST_APPLIED_ANNOTATION


def make_spec(**kwargs):
    base = dict(instance_type="t3.large", iam_instance_profile="nodes", key_name="default")
    base.update(kwargs)
    return AWSMachineSpec(**base)


def make_instance(**kwargs):
    base = dict(
        id="i-1",
        state="running",
        type="t3.large",
        iam_profile="nodes",
        key_name="default",
        root_device_size=8,
        subnet_id="subnet-1",
    )
    base.update(kwargs)
    return Instance(**base)


@dataclass
class Machine:
    spec: AWSMachineSpec = field(default_factory=make_spec)
    annotations: dict = field(default_factory=dict)
    finalizers: list = field(default_factory=list)
    deletion_timestamp: Any = None
    error_reason: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class FakeScope:
    provider_machine: Machine
    cluster_annotations: dict = field(
        default_factory=lambda: {ANNOTATION_CLUSTER_INFRASTRUCTURE_READY: VALUE_READY}
    )
    bootstrap_data: Optional[str] = "data"
    control_plane: bool = False
    name: str = "machine-0"
    provider_id: str = ""
    instance_state: Optional[str] = None
    logs: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    closed: bool = False

    @property
    def instance_id(self):
        return self.provider_id.rsplit("/", 1)[-1] if self.provider_id else None

    def is_control_plane(self):
        return self.control_plane

    def set_provider_id(self, value):
        self.provider_id = value

    def set_instance_state(self, state):
        self.instance_state = state

    def set_error_reason(self, reason):
        self.provider_machine.error_reason = reason

    def set_error_message(self, message):
        self.provider_machine.error_message = message

    def set_annotation(self, key, value):
        self.provider_machine.annotations[key] = value

    def info(self, msg, **kv):
        self.logs.append(msg)

    def error(self, err, msg):
        self.errors.append((err, msg))

    def close(self):
        self.closed = True


class FakeEC2:
    def __init__(self, by_tags=None, by_id=None, created=None, core=("sg-core",), existing=None):
        self.by_tags = by_tags
        self.by_id = by_id
        self.created = created
        self.core = list(core)
        self.existing = existing
        self.calls = []

    def instance_if_exists(self, instance_id):
        self.calls.append(("instance_if_exists", instance_id))
        return self.by_id

    def get_running_instance_by_tags(self, scope):
        self.calls.append(("by_tags",))
        return self.by_tags

    def create_instance(self, scope):
        self.calls.append(("create",))
        return self.created

    def get_instance_security_groups(self, instance_id):
        if self.existing is not None:
            return self.existing
        return {instance_id: list(self.core)}

    def get_core_security_groups(self, scope):
        return list(self.core)

    def update_instance_security_groups(self, instance_id, ids):
        self.calls.append(("update_sgs", instance_id, ids))

    def update_resource_tags(self, instance_id, created, deleted):
        self.calls.append(("update_tags", instance_id, created, deleted))


class FakeELB:
    def __init__(self, fail=False):
        self.registered = []
        self.fail = fail

    def register_instance_with_apiserver_elb(self, instance_id):
        if self.fail:
            raise OSError("elb down")
        self.registered.append(instance_id)


class FakeClient:
    def __init__(self, machine=None):
        self.machine = machine

    def get(self, request):
        if self.machine is None:
            raise LookupError(request)
        return self.machine


def build(machine=None, scope_kwargs=None, ec2=None, elb=None, scope_error=None):
    machine = machine if machine is not None else Machine()
    ec2 = ec2 if ec2 is not None else FakeEC2(by_tags=make_instance())
    elb = elb if elb is not None else FakeELB()
    holder = {}

    def scope_factory(provider_machine, client):
        if scope_error is not None:
            raise scope_error
        holder["scope"] = FakeScope(provider_machine, **(scope_kwargs or {}))
        return holder["scope"]

    reconciler = ReconcileAWSMachine(
        FakeClient(machine), scope_factory, lambda scope: ec2, lambda scope: elb
    )
    return reconciler, machine, ec2, elb, holder


def test_missing_machine_returns_empty_result():
    reconciler = ReconcileAWSMachine(FakeClient(None), None, None, None)
    assert reconciler.reconcile("default/foo") == Result()


def test_finalizer_added_once():
    reconciler, machine, *_ = build()
    reconciler.reconcile("default/foo")
    reconciler.reconcile("default/foo")
    assert machine.finalizers == [MACHINE_FINALIZER]


def test_deleted_machine_gets_no_finalizer():
    reconciler, machine, *_ = build(machine=Machine(deletion_timestamp=object()))
    reconciler.reconcile("default/foo")
    assert machine.finalizers == []


def test_scope_requeue_error_becomes_result():
    delay = timedelta(seconds=3)
    reconciler, *_ = build(scope_error=RequeueAfterError(delay))
    assert reconciler.reconcile("r") == Result(requeue_after=delay)


def test_scope_failure_raises():
    reconciler, *_ = build(scope_error=OSError("boom"))
    with pytest.raises(RuntimeError, match="^failed to create scope: boom"):
        reconciler.reconcile("r")


def test_waits_for_bootstrap_data():
    reconciler, _, ec2, _, holder = build(scope_kwargs={"bootstrap_data": ""})
    result = reconciler.reconcile("r")
    assert result == Result(requeue_after=WAIT_FOR_BOOTSTRAP_DATA)
    assert holder["scope"].closed is True
    assert ec2.calls == []


def test_requeues_until_cluster_infrastructure_ready():
    reconciler, _, ec2, _, holder = build(scope_kwargs={"cluster_annotations": {}})
    result = reconciler.reconcile("r")
    assert result == Result(requeue=True, requeue_after=WAIT_FOR_CLUSTER_INFRASTRUCTURE_READY)
    assert ec2.calls == []
    assert holder["scope"].closed is True


def test_error_state_skips_reconciliation():
    reconciler, _, ec2, *_ = build(machine=Machine(error_reason="UpdateError"))
    assert reconciler.reconcile("r") == Result()
    assert ec2.calls == []


def test_running_instance_found_by_tags():
    reconciler, machine, ec2, elb, holder = build()
    assert reconciler.reconcile("r") == Result()
    scope = holder["scope"]
    assert scope.provider_id == "aws:////i-1"
    assert scope.instance_state == "running"
    assert machine.annotations["cluster-api-provider-aws"] == "true"
    assert machine.error_reason is None
    assert ("create",) not in ec2.calls
    assert elb.registered == []


def test_instance_created_when_none_found():
    ec2 = FakeEC2(by_tags=None, created=make_instance(id="i-new", state="pending"))
    reconciler, _, ec2, _, holder = build(ec2=ec2)
    reconciler.reconcile("r")
    assert ("create",) in ec2.calls
    assert holder["scope"].provider_id == "aws:////i-new"


def test_provider_id_lookup_without_instance_sets_error():
    ec2 = FakeEC2(by_id=None, created=None)
    reconciler, machine, ec2, _, _ = build(
        ec2=ec2, scope_kwargs={"provider_id": "aws:////i-gone"}
    )
    assert reconciler.reconcile("r") == Result()
    assert ec2.calls[0] == ("instance_if_exists", "i-gone")
    assert machine.error_reason == UPDATE_MACHINE_ERROR
    assert machine.error_message == "EC2 instance cannot be found"


def test_invalid_provider_id_raises():
    reconciler, *_ = build(scope_kwargs={"provider_id": "nonsense"})
    with pytest.raises(ValueError):
        reconciler.reconcile("r")


def test_unexpected_state_sets_error():
    ec2 = FakeEC2(by_tags=make_instance(state="stopped"))
    reconciler, machine, *_ = build(ec2=ec2)
    reconciler.reconcile("r")
    assert machine.error_reason == UPDATE_MACHINE_ERROR
    assert "stopped" in machine.error_message


def test_control_plane_registered_with_load_balancer():
    reconciler, _, _, elb, _ = build(scope_kwargs={"control_plane": True})
    reconciler.reconcile("r")
    assert elb.registered == ["i-1"]


def test_load_balancer_failure_is_reported():
    reconciler, _, _, _, holder = build(
        scope_kwargs={"control_plane": True}, elb=FakeELB(fail=True)
    )
    with pytest.raises(RuntimeError, match="failed to reconcile LB attachment"):
        reconciler.reconcile("r")
    assert holder["scope"].errors[0][1] == "Failed to reconcile AWSMachine"


def test_immutable_change_is_rejected():
    machine = Machine(spec=make_spec(instance_type="m5.xlarge"))
    reconciler, _, _, _, holder = build(machine=machine)
    with pytest.raises(RuntimeError, match="found attempt to change immutable state"):
        reconciler.reconcile("r")
    assert holder["scope"].closed is True


def test_tags_and_security_groups_applied():
    spec = make_spec(
        additional_tags={"team": "infra"},
        additional_security_groups=[ResourceReference(id="sg-a")],
    )
    reconciler, machine, ec2, _, _ = build(machine=Machine(spec=spec))
    reconciler.reconcile("r")
    assert ("update_sgs", "i-1", ["sg-a", "sg-core"]) in ec2.calls
    assert ("update_tags", "i-1", {"team": "infra"}, {}) in ec2.calls
    assert TAGS_LAST_APPLIED_ANNOTATION in machine.annotations


def test_outdated_nothing_when_matching():
    assert is_machine_outdated(make_spec(), make_instance()) == []


def test_outdated_instance_type():
    errs = is_machine_outdated(make_spec(instance_type="m5.xlarge"), make_instance())
    assert len(errs) == 1
    assert "instance type cannot be mutated" in errs[0]


def test_outdated_root_size_ignored_when_zero():
    assert is_machine_outdated(make_spec(root_device_size=0), make_instance()) == []
    errs = is_machine_outdated(make_spec(root_device_size=20), make_instance())
    assert len(errs) == 1
    assert errs[0].startswith("Root volume size cannot be mutated")


def test_outdated_subnet_and_public_ip():
    spec = make_spec(subnet=ResourceReference(id="subnet-2"), public_ip=True)
    errs = is_machine_outdated(spec, make_instance())
    assert len(errs) == 2
    assert any("subnet ID" in e for e in errs)
    assert any("public IP setting" in e for e in errs)


def test_outdated_public_ip_present_on_instance():
    errs = is_machine_outdated(make_spec(), make_instance(public_ip="203.0.113.5"))
    assert len(errs) == 1
    assert "public IP setting" in errs[0]