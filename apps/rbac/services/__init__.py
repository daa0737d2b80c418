"""
RBAC services.

One module per component; ``AuthorizationEngine`` in ``engine`` wires
them together behind the external contract.
"""
from apps.rbac.services.assignments import RoleAssignmentService
from apps.rbac.services.audit import AuditTrail, create_audit_trail
from apps.rbac.services.change_requests import (
    ApplyResult, ChangeRequestWorkflow, create_change_request_workflow
)
from apps.rbac.services.engine import (
    AuthorizationDecision, AuthorizationEngine, create_authorization_engine
)
from apps.rbac.services.grant_resolver import GrantResolver, MfaCompliance, create_grant_resolver
from apps.rbac.services.grants import GrantService
from apps.rbac.services.network_gate import GateDecision, NetworkGate, ip_matches
from apps.rbac.services.permission_catalog import DependencyGraph, PermissionCatalog
from apps.rbac.services.role_graph import RoleGraph, RoleHierarchyService
from apps.rbac.services.sessions import SessionTracker

__all__ = [
    'ApplyResult',
    'AuditTrail',
    'AuthorizationDecision',
    'AuthorizationEngine',
    'ChangeRequestWorkflow',
    'DependencyGraph',
    'GateDecision',
    'GrantResolver',
    'GrantService',
    'MfaCompliance',
    'NetworkGate',
    'PermissionCatalog',
    'RoleAssignmentService',
    'RoleGraph',
    'RoleHierarchyService',
    'SessionTracker',
    'create_audit_trail',
    'create_authorization_engine',
    'create_change_request_workflow',
    'create_grant_resolver',
    'ip_matches',
]
