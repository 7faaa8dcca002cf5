# capaws

Reconciliation logic for machines that run on AWS EC2 as part of a managed
cluster. The package works out what has to change on an instance and calls
the service objects you pass in to make those changes. It never talks to
AWS or to a cluster API on its own.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## What is inside

- `capaws.record` holds a process-wide event recorder. `event` and `warn`
  record normal and warning events. `eventf` and `warnf` do the same, with
  the message formatted `%`-style from extra arguments. The reason is
  title-cased before it is recorded. The default recorder is a
  `FakeRecorder`, which keeps each event in its `events` list as a
  `"<type> <reason> <message>"` string. `init_from_recorder(recorder)`
  installs a different recorder. Only the first call has any effect.
- `capaws.controller` keeps a list of controller setup functions.
  `register(func)` adds one and can be used as a decorator.
  `add_to_manager(manager)` calls each registered function with the manager
  in order, and stops at the first one that raises.
- `capaws.awsmachine.annotations` reads and writes a machine's
  `annotations` dict. `machine_annotation` and `update_machine_annotation`
  work with plain strings. `machine_annotation_json` and
  `update_machine_annotation_json` work with JSON objects, stored compact
  and with sorted keys. Reading a value that is not a JSON object raises
  `ValueError`.
- `capaws.awsmachine.tags` compares the last applied tags with the wanted
  tags. `tags_changed` returns a `TagChanges` with `changed`, `created`,
  `deleted` and `new_annotation`. `ensure_tags(svc, machine, instance_id,
  additional_tags)` calls `svc.update_resource_tags` when something changed,
  records the new tags on the machine, and returns whether anything changed.
- `capaws.awsmachine.security_groups` works out the groups an instance
  should have. `security_groups_changed` returns whether a change is needed
  and the sorted list of wanted group IDs. Core groups are always kept.
  Groups applied earlier that are no longer wanted are dropped.
  `ensure_security_groups` applies the result through the EC2 service and
  records the applied groups on the machine.
- `capaws.awsmachine.reconciler` holds the data classes `Instance`,
  `ResourceReference`, `AWSMachineSpec` and `Result`, and the exception
  `RequeueAfterError`.
  - `is_machine_outdated(spec, instance)` lists every attempt to change
    fields that are fixed once the instance exists: instance type, IAM
    profile, SSH key, root volume size, subnet and public IP.
  - `ReconcileAWSMachine(client, scope_factory, ec2_factory, elb_factory)`
    has `reconcile(request)`, which does the following:
    - adds the machine finalizer;
    - waits for bootstrap data and for cluster infrastructure;
    - finds or creates the instance;
    - sets the provider ID and instance state;
    - registers control-plane instances with the API server load balancer;
    - brings security groups and tags up to date.

    It returns a `Result` that says whether, and after how long, to
    requeue.
- `capaws.deployer.Deployer(scope_getter, elb_factory)` has
  `get_ip(cluster, machine)`, which returns the DNS name of the API server
  load balancer. It uses the name stored in the cluster status if there is
  one, and asks the load balancer service otherwise.

## Example

```python
from capaws.awsmachine.tags import tags_changed

changes = tags_changed({"env": "dev", "old": "x"}, {"env": "prod", "team": "core"})
assert changes.changed
assert changes.created == {"env": "prod", "team": "core"}
assert changes.deleted == {"old": "x"}
```

## What it does not do

- It has no command-line program and no controller process. You drive
  `ReconcileAWSMachine` and `Deployer` from your own code.
- It includes no AWS clients, cluster API clients or machine scopes. You
  supply the EC2 and load-balancer services, the client and the scope
  objects.
- It does not create bootstrap tokens or kubeconfig files.