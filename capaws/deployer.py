"""Cluster deployer that looks up the API server address of a cluster."""

from __future__ import annotations

from typing import Any, Callable, Optional


def _status_dns_name(scope: Any) -> Optional[str]:
    """Return the API server load balancer DNS name in the scope's status, if any."""
    status = getattr(scope, "cluster_status", None)
    if status is None:
        return None
    network = getattr(status, "network", None)
    elb = getattr(network, "api_server_elb", None)
    dns_name = getattr(elb, "dns_name", "")
    return dns_name or None


class Deployer:
    """Answers questions about a deployed cluster's endpoints.

    ``scope_getter.cluster_scope(cluster=...)`` builds the cluster scope;
    ``elb_factory(scope)`` builds a load-balancer service whose
    ``get_api_server_dns_name()`` returns the API server DNS name.
    """

    def __init__(self, scope_getter: Any, elb_factory: Callable[[Any], Any]) -> None:
        self._scope_getter = scope_getter
        self._elb_factory = elb_factory

    def get_ip(self, cluster: Any, machine: Any = None) -> str:
        """Return the address of the cluster's API server.

        The name stored in the cluster status is used when present; otherwise
        the load balancer is queried. ``machine`` is ignored.
        """
        scope = self._scope_getter.cluster_scope(cluster=cluster)

        dns_name = _status_dns_name(scope)
        if dns_name is not None:
            return dns_name

        return self._elb_factory(scope).get_api_server_dns_name()