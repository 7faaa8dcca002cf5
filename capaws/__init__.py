"""Reconciliation logic for AWS-backed cluster machines: events, controllers, deployer."""

__version__ = "0.1.0"