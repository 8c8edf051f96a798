"""Operator engine for manifest-based secrets provisioning.

Walks a manifest dependency graph to plan, apply and destroy resources
through a provider, and gates the consume phase behind a credential
rotation.

Package name uses 'manifest_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
