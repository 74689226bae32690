"""
Pydantic schemas for API request/response validation.

This package contains schema definitions for the registry resources
used in API endpoints.
"""

# Re-export schemas for convenient imports.
from .actor import ActorAdd as ActorAdd
from .actor import ActorResponse as ActorResponse
from .admin import RegistryStateResponse as RegistryStateResponse
from .checkpoint import CheckpointCreate as CheckpointCreate
from .checkpoint import CheckpointResponse as CheckpointResponse
from .checkpoint import TraceLinkResponse as TraceLinkResponse
from .compliance import CheckCreate as CheckCreate
from .compliance import CheckResponse as CheckResponse
from .compliance import ComplianceStatusResponse as ComplianceStatusResponse
from .entity import EntityCreate as EntityCreate
from .entity import EntityResponse as EntityResponse
from .entity import EntitySummaryResponse as EntitySummaryResponse
from .event import EventPage as EventPage
from .rule import RuleCreate as RuleCreate
from .rule import RuleResponse as RuleResponse
