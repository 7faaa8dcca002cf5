"""Reconciliation of AWS machines against their EC2 instances."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from capaws.awsmachine.security_groups import ensure_security_groups
from capaws.awsmachine.tags import ensure_tags

WAIT_FOR_CLUSTER_INFRASTRUCTURE_READY = timedelta(seconds=15)
WAIT_FOR_CONTROL_PLANE_MACHINE_EXISTENCE = timedelta(seconds=5)
WAIT_FOR_CONTROL_PLANE_READY = timedelta(seconds=5)
WAIT_FOR_BOOTSTRAP_DATA = timedelta(seconds=10)

MACHINE_FINALIZER = "machine.cluster.x-k8s.io"
ANNOTATION_CLUSTER_INFRASTRUCTURE_READY = "aws.cluster.sigs.k8s.io/infrastructure-ready"
VALUE_READY = "true"
UPDATE_MACHINE_ERROR = "UpdateError"

INSTANCE_STATE_RUNNING = "running"
INSTANCE_STATE_PENDING = "pending"


def _q(text: Any) -> str:
    return json.dumps(str(text))


@dataclass
class Instance:
    """Description of an EC2 instance."""

    id: str
    state: str
    type: str = ""
    iam_profile: str = ""
    key_name: Optional[str] = None
    root_device_size: int = 0
    subnet_id: str = ""
    public_ip: Optional[str] = None


@dataclass
class ResourceReference:
    """Reference to an AWS resource by ID, ARN or filters."""

    id: Optional[str] = None
    arn: Optional[str] = None
    filters: list[Any] = field(default_factory=list)


@dataclass
class AWSMachineSpec:
    """Desired state of an AWS machine."""

    instance_type: str = ""
    iam_instance_profile: str = ""
    key_name: str = ""
    root_device_size: int = 0
    subnet: Optional[ResourceReference] = None
    public_ip: Optional[bool] = None
    additional_security_groups: list[ResourceReference] = field(default_factory=list)
    additional_tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Result:
    """What the caller should do after a reconciliation."""

    requeue: bool = False
    requeue_after: timedelta = timedelta(0)


class RequeueAfterError(Exception):
    """Signals that reconciliation should be retried after a delay."""

    def __init__(self, requeue_after: timedelta) -> None:
        super().__init__(f"requeue in: {requeue_after}")
        self.requeue_after = requeue_after


def _requeue_cause(err: BaseException | None) -> RequeueAfterError | None:
    while err is not None:
        if isinstance(err, RequeueAfterError):
            return err
        err = err.__cause__
    return None


def _parse_provider_id(provider_id: str) -> Optional[str]:
    """Return the instance ID in ``provider_id``, or None when it is empty."""
    if not provider_id:
        return None
    provider, sep, rest = provider_id.partition("://")
    instance_id = provider_id.rsplit("/", 1)[-1]
    if not sep or not provider or ":" in provider or not instance_id or not rest:
        raise ValueError(f"failed to parse Spec.ProviderID: invalid provider ID {_q(provider_id)}")
    return instance_id


def is_machine_outdated(spec: AWSMachineSpec, instance: Instance) -> list[str]:
    """Describe every attempt in ``spec`` to change immutable instance state."""
    errs: list[str] = []

    if spec.instance_type != instance.type:
        errs.append(
            f"instance type cannot be mutated from {_q(instance.type)} to {_q(spec.instance_type)}"
        )

    if spec.iam_instance_profile != instance.iam_profile:
        errs.append(
            f"instance IAM profile cannot be mutated from {_q(instance.iam_profile)} "
            f"to {_q(spec.iam_instance_profile)}"
        )

    key_name = instance.key_name or ""
    if spec.key_name != key_name:
        errs.append(f"SSH key name cannot be mutated from {_q(key_name)} to {_q(spec.key_name)}")

    if spec.root_device_size > 0 and spec.root_device_size != instance.root_device_size:
        errs.append(
            f"Root volume size cannot be mutated from {instance.root_device_size} "
            f"to {spec.root_device_size}"
        )

    if spec.subnet is not None:
        subnet_id = spec.subnet.id or ""
        if subnet_id != instance.subnet_id:
            errs.append(
                f"machine subnet ID cannot be mutated from {_q(instance.subnet_id)} to {_q(subnet_id)}"
            )

    has_public_ip = bool(instance.public_ip)
    wants_public_ip = bool(spec.public_ip)
    if wants_public_ip != has_public_ip:
        errs.append(
            f'public IP setting cannot be mutated from "{str(has_public_ip).lower()}" '
            f'to "{str(wants_public_ip).lower()}"'
        )

    return errs


class ReconcileAWSMachine:
    """Drives an AWS machine towards the state in its spec.

    ``client.get(request)`` returns the machine or raises LookupError when it
    does not exist. ``scope_factory(provider_machine=..., client=...)`` builds
    the machine scope; ``ec2_factory(scope)`` and ``elb_factory(scope)`` build
    the EC2 and load-balancer services for it.
    """

    def __init__(
        self,
        client: Any,
        scope_factory: Callable[..., Any],
        ec2_factory: Callable[[Any], Any],
        elb_factory: Callable[[Any], Any],
    ) -> None:
        self._client = client
        self._scope_factory = scope_factory
        self._ec2_factory = ec2_factory
        self._elb_factory = elb_factory

    def reconcile(self, request: Any) -> Result:
        """Reconcile the machine named by ``request``."""
        try:
            machine = self._client.get(request)
        except LookupError:
            return Result()

        if getattr(machine, "deletion_timestamp", None) is None:
            if MACHINE_FINALIZER not in machine.finalizers:
                machine.finalizers.append(MACHINE_FINALIZER)

        try:
            scope = self._scope_factory(provider_machine=machine, client=self._client)
        except Exception as err:
            requeue = _requeue_cause(err)
            if requeue is not None:
                return Result(requeue_after=requeue.requeue_after)
            raise RuntimeError(f"failed to create scope: {err}") from err

        try:
            if not scope.bootstrap_data:
                scope.info("Waiting for bootstrap data to be available")
                return Result(requeue_after=WAIT_FOR_BOOTSTRAP_DATA)

            try:
                self._reconcile(scope)
            except Exception as err:
                requeue = _requeue_cause(err)
                if requeue is not None:
                    scope.info("Reconciliation asked to requeue", after=requeue.requeue_after)
                    return Result(requeue=True, requeue_after=requeue.requeue_after)
                scope.error(err, "Failed to reconcile AWSMachine")
                raise
            return Result()
        finally:
            scope.close()

    def _reconcile(self, scope: Any) -> None:
        machine = scope.provider_machine
        if machine.error_reason is not None or machine.error_message is not None:
            scope.info("Error state detected, skipping reconciliation")
            return

        if scope.cluster_annotations.get(ANNOTATION_CLUSTER_INFRASTRUCTURE_READY) != VALUE_READY:
            scope.info("Cluster infrastructure is not ready yet, requeuing machine")
            raise RequeueAfterError(WAIT_FOR_CLUSTER_INFRASTRUCTURE_READY)

        ec2svc = self._ec2_factory(scope)
        instance = self._get_or_create(scope, ec2svc)

        if instance is None:
            scope.set_error_reason(UPDATE_MACHINE_ERROR)
            scope.set_error_message("EC2 instance cannot be found")
            return

        scope.set_provider_id(f"aws:////{instance.id}")
        scope.set_instance_state(instance.state)
        scope.set_annotation("cluster-api-provider-aws", "true")

        if instance.state == INSTANCE_STATE_RUNNING:
            scope.info("Machine instance is running", instance_id=scope.instance_id)
        elif instance.state == INSTANCE_STATE_PENDING:
            scope.info("Machine instance is pending", instance_id=scope.instance_id)
        else:
            scope.set_error_reason(UPDATE_MACHINE_ERROR)
            scope.set_error_message(f"EC2 instance state {_q(instance.state)} is unexpected")

        try:
            self._reconcile_lb_attachment(scope, instance)
        except Exception as err:
            raise RuntimeError(f"failed to reconcile LB attachment: {err}") from err

        self._update(scope, ec2svc, instance)

    def _find_instance(self, scope: Any, ec2svc: Any) -> Optional[Instance]:
        instance_id = _parse_provider_id(scope.provider_id)

        if instance_id is not None:
            try:
                return ec2svc.instance_if_exists(instance_id)
            except Exception as err:
                raise RuntimeError(f"failed to query AWSMachine instance: {err}") from err

        try:
            return ec2svc.get_running_instance_by_tags(scope)
        except Exception as err:
            raise RuntimeError(f"failed to query AWSMachine instance by tags: {err}") from err

    def _get_or_create(self, scope: Any, ec2svc: Any) -> Optional[Instance]:
        instance = self._find_instance(scope, ec2svc)
        if instance is None:
            try:
                instance = ec2svc.create_instance(scope)
            except Exception as err:
                raise RuntimeError(f"failed to create AWSMachine instance: {err}") from err
        return instance

    def _update(self, scope: Any, ec2svc: Any, instance: Instance) -> None:
        spec = scope.provider_machine.spec
        errs = is_machine_outdated(spec, instance)
        if errs:
            raise RuntimeError(
                f"found attempt to change immutable state for machine {_q(scope.name)}: "
                f"[{' '.join(_q(e) for e in errs)}]"
            )

        existing = ec2svc.get_instance_security_groups(scope.instance_id)

        try:
            ensure_security_groups(ec2svc, scope, spec.additional_security_groups, existing)
        except Exception as err:
            raise RuntimeError(f"failed to apply security groups: {err}") from err

        try:
            ensure_tags(ec2svc, scope.provider_machine, scope.instance_id, spec.additional_tags)
        except Exception as err:
            raise RuntimeError(f"failed to ensure tags: {err}") from err

    def _reconcile_lb_attachment(self, scope: Any, instance: Instance) -> None:
        if not scope.is_control_plane():
            return
        elbsvc = self._elb_factory(scope)
        try:
            elbsvc.register_instance_with_apiserver_elb(instance.id)
        except Exception as err:
            raise RuntimeError(
                f"could not register control plane instance {_q(instance.id)} "
                f"with load balancer: {err}"
            ) from err