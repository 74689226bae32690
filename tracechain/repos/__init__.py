"""
Repository layer for data access operations.

This package contains repository modules that encapsulate database queries
and registry rules for entities, checkpoints, authorization sets, the rule
catalog and compliance evidence.
"""
