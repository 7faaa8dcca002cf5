"""Annotation, tag, security-group and reconcile logic for AWS machines."""