"""
RBAC (Role-Based Access Control) application.

Provides hospital authorization with:
- Hierarchical roles ordered by priority
- Permission catalog with prerequisite dependencies
- Role, direct and temporary grants
- Network origin allow/deny rules
- Four-eyes change request workflow
- Permission sessions and an append-only audit trail
"""
