"""
Role hierarchy.

``RoleGraph`` is an in-memory snapshot of the role forest held as two
adjacency maps (role -> parent, role -> children). Every walk is iterative
and guarded against cycles. ``RoleHierarchyService`` performs the writes,
each under a table-wide lock so concurrent re-parenting cannot validate
against a stale graph.
"""
import logging
from collections import defaultdict, deque
from typing import Dict, List, Optional
from uuid import UUID

from django.conf import settings
from django.db import transaction

from apps.core.exceptions import HierarchyIntegrityError, ValidationError
from apps.core.logging import SecurityLogger
from apps.rbac.models import Role
from apps.rbac.services.audit import AuditTrail, create_audit_trail

logger = logging.getLogger(__name__)


def reserved_super_admin_slug() -> str:
    return getattr(settings, 'RBAC_SUPER_ADMIN_SLUG', 'super-admin')


def _key(role):
    return getattr(role, 'id', role)


class RoleGraph:
    """In-memory adjacency view of the role forest."""

    def __init__(self, roles):
        self._roles: Dict[UUID, Role] = {}
        self._parent: Dict[UUID, Optional[UUID]] = {}
        self._children: Dict[UUID, List[UUID]] = defaultdict(list)
        for role in roles:
            self._roles[role.id] = role
        for role in self._roles.values():
            self._link(role.id, role.parent_role_id)

    @classmethod
    def load(cls) -> 'RoleGraph':
        return cls(Role.objects.all())

    def __contains__(self, role) -> bool:
        return _key(role) in self._roles

    def __len__(self):
        return len(self._roles)

    def _link(self, role_id, parent_id):
        self._parent[role_id] = parent_id
        if parent_id is not None:
            self._children[parent_id].append(role_id)

    def _unlink(self, role_id):
        old_parent = self._parent.get(role_id)
        if old_parent is not None and role_id in self._children[old_parent]:
            self._children[old_parent].remove(role_id)
        self._parent[role_id] = None

    def set_parent(self, role, parent) -> None:
        """Re-point a role's parent in the snapshot."""
        role_id = _key(role)
        parent_id = _key(parent) if parent is not None else None
        self._unlink(role_id)
        self._link(role_id, parent_id)
        self._roles[role_id].parent_role_id = parent_id

    def get(self, role) -> Role:
        try:
            return self._roles[_key(role)]
        except KeyError:
            raise ValidationError(
                f"Role '{role}' does not exist",
                details={'role': str(_key(role))}
            )

    def parent(self, role) -> Optional[Role]:
        parent_id = self._parent.get(self.get(role).id)
        return self._roles.get(parent_id) if parent_id is not None else None

    def children(self, role) -> List[Role]:
        return [self._roles[cid] for cid in self._children.get(self.get(role).id, ())]

    def ancestors(self, role) -> List[Role]:
        """
        Parent chain from the nearest parent up to the root.

        Raises:
            HierarchyIntegrityError: If the chain loops
        """
        start = self.get(role).id
        chain = []
        seen = {start}
        current = self._parent.get(start)
        while current is not None:
            if current in seen:
                raise HierarchyIntegrityError(
                    "Role hierarchy contains a cycle",
                    reason=HierarchyIntegrityError.CYCLE,
                    details={'role': str(start), 'repeated': str(current)}
                )
            seen.add(current)
            chain.append(self._roles[current])
            current = self._parent.get(current)
        return chain

    def descendants(self, role) -> List[Role]:
        """All roles below ``role``, breadth-first."""
        start = self.get(role).id
        result = []
        seen = {start}
        queue = deque(self._children.get(start, ()))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            result.append(self._roles[current])
            queue.extend(self._children.get(current, ()))
        return result

    def hierarchy_level(self, role) -> int:
        """1 at a root, plus one per hop."""
        return len(self.ancestors(role)) + 1

    def hierarchy_path(self, role) -> List[str]:
        """Role names from the root down to ``role``."""
        return [r.name for r in reversed(self.ancestors(role))] + [self.get(role).name]

    def inheritance_violation(self, child, parent) -> Optional[str]:
        """
        First reason ``child`` may not sit under ``parent``, or None.

        Checked in order: system child under a non-system parent, parent
        already among the child's ancestors (other than its current
        parent), and priority not strictly greater at the parent. A parent
        that lies below the child always fails the priority check, since
        every stored edge already decreases in priority.
        """
        child = self.get(child) if child in self else child
        parent = self.get(parent)

        if child.is_system and not parent.is_system:
            return HierarchyIntegrityError.SYSTEM_PARENT

        if parent.id == child.id:
            return HierarchyIntegrityError.CYCLE
        if child.id in self._roles and parent.id != self._parent.get(child.id):
            if any(a.id == parent.id for a in self.ancestors(child)):
                return HierarchyIntegrityError.CYCLE

        if not parent.priority > child.priority:
            return HierarchyIntegrityError.PRIORITY

        return None

    def can_inherit(self, child, parent) -> bool:
        return self.inheritance_violation(child, parent) is None

    def validate_path(self, role) -> None:
        """
        Check the whole chain from ``role`` to its root: no repeats and
        strictly increasing priority at every hop.

        Raises:
            HierarchyIntegrityError
        """
        current = self.get(role)
        for ancestor in self.ancestors(current):
            if not ancestor.priority > current.priority:
                raise HierarchyIntegrityError(
                    f"Role '{current.slug}' priority {current.priority} is not below "
                    f"parent '{ancestor.slug}' priority {ancestor.priority}",
                    reason=HierarchyIntegrityError.PRIORITY,
                    details={'role': current.slug, 'parent': ancestor.slug}
                )
            current = ancestor

    def validate_all(self) -> None:
        """Check every role's path. Used after bulk seeding."""
        for role_id in list(self._roles):
            self.validate_path(role_id)

    def tree(self) -> List[dict]:
        """Nested dict forest for display, roots ordered by priority."""
        def node(role):
            return {'id': str(role.id), 'name': role.name, 'slug': role.slug,
                    'priority': role.priority, 'children': []}

        roots = sorted(
            (r for r in self._roles.values() if self._parent.get(r.id) is None),
            key=lambda r: (-r.priority, r.name)
        )
        forest = []
        stack = []
        for root in roots:
            root_node = node(root)
            forest.append(root_node)
            stack.append((root.id, root_node))
        while stack:
            role_id, role_node = stack.pop()
            kids = sorted(
                (self._roles[cid] for cid in self._children.get(role_id, ())),
                key=lambda r: (-r.priority, r.name)
            )
            for kid in kids:
                kid_node = node(kid)
                role_node['children'].append(kid_node)
                stack.append((kid.id, kid_node))
        return forest


class RoleHierarchyService:
    """
    Service for role writes: creation, re-parenting, priority changes,
    renames and deletion.
    """

    CAPABILITY_FIELDS = (
        'module_access', 'data_visibility_scope', 'user_management_capabilities',
        'system_configuration_access', 'reporting_permissions', 'role_specific_limitations',
        'mfa_required', 'mfa_grace_period_days', 'session_timeout_minutes',
        'concurrent_session_limit', 'description',
    )

    def __init__(self, audit: Optional[AuditTrail] = None):
        self.audit = audit or create_audit_trail()

    @staticmethod
    def _lock_roles() -> RoleGraph:
        """Lock every role row for the rest of the transaction and load a fresh graph."""
        roles = list(Role.objects.select_for_update().order_by('id'))
        return RoleGraph(roles)

    def _reject(self, message, reason, role, parent=None):
        SecurityLogger.log_hierarchy_violation(
            role=getattr(role, 'slug', str(role)),
            parent=getattr(parent, 'slug', None),
            reason=reason
        )
        raise HierarchyIntegrityError(
            message,
            reason=reason,
            details={'role': getattr(role, 'slug', str(role)), 'parent': getattr(parent, 'slug', None)}
        )

    def _check_super_admin(self, slug, is_super_admin, role=None):
        reserved = reserved_super_admin_slug()
        if is_super_admin:
            existing = Role.objects.super_admin()
            if existing is not None and (role is None or existing.id != role.id):
                self._reject("A super-admin role already exists", HierarchyIntegrityError.RESERVED_ROLE, slug)
            if slug != reserved:
                self._reject(
                    f"The super-admin role must use the reserved slug '{reserved}'",
                    HierarchyIntegrityError.RESERVED_ROLE, slug
                )
        elif slug == reserved:
            self._reject(
                f"Slug '{reserved}' is reserved for the super-admin role",
                HierarchyIntegrityError.RESERVED_ROLE, slug
            )

    @transaction.atomic
    def create_role(self, name: str, slug: str, priority: int, parent: Optional[Role] = None,
                    is_system: bool = False, is_super_admin: bool = False,
                    created_by=None, **capabilities) -> Role:
        """
        Create a role, validating its place in the hierarchy before writing.

        Raises:
            ValidationError: On unknown capability fields or a duplicate slug
            HierarchyIntegrityError: On an invalid parent or reserved slug misuse
        """
        unknown = set(capabilities) - set(self.CAPABILITY_FIELDS)
        if unknown:
            raise ValidationError(
                f"Unknown role fields: {', '.join(sorted(unknown))}",
                details={'unknown': sorted(unknown)}
            )

        graph = self._lock_roles()
        if Role.objects_with_deleted.filter(slug=slug).exists():
            raise ValidationError(f"Role slug '{slug}' is already taken", details={'slug': slug})

        self._check_super_admin(slug, is_super_admin)

        role = Role(
            name=name,
            slug=slug,
            priority=priority,
            is_system=is_system,
            is_super_admin=is_super_admin,
            **capabilities
        )
        if parent is not None:
            reason = graph.inheritance_violation(role, parent)
            if reason:
                self._reject(
                    f"Role '{slug}' cannot be placed under '{parent.slug}' ({reason})",
                    reason, role, parent
                )
            role.parent_role = parent

        role.save()

        self.audit.append(
            action='role_created',
            description=f"Role '{role.name}' created",
            user=created_by,
            context={'role': role.slug, 'priority': role.priority,
                     'parent': parent.slug if parent else None},
        )
        logger.info(f"Role created: {role.slug}", extra={'role_id': str(role.id)})
        return role

    @transaction.atomic
    def set_parent(self, role: Role, parent: Optional[Role], changed_by=None) -> RoleGraph:
        """
        Re-parent a role (or detach it with ``parent=None``).

        The whole role table is locked, the move is checked with
        ``inheritance_violation`` and the full resulting path to the root is
        re-validated before the write commits.

        Returns:
            The updated RoleGraph

        Raises:
            HierarchyIntegrityError: Nothing is written when raised
        """
        graph = self._lock_roles()
        current = graph.get(role)
        old_parent = graph.parent(current)

        if parent is not None:
            parent = graph.get(parent)
            reason = graph.inheritance_violation(current, parent)
            if reason:
                self._reject(
                    f"Role '{current.slug}' cannot be placed under '{parent.slug}' ({reason})",
                    reason, current, parent
                )

        graph.set_parent(current, parent)
        graph.validate_path(current)
        for descendant in graph.descendants(current):
            graph.validate_path(descendant)

        current.save(update_fields=['parent_role', 'updated_at'])
        role.parent_role_id = current.parent_role_id

        self.audit.append(
            action='role_reparented',
            description=f"Role '{current.name}' moved under "
                        f"'{parent.name if parent else 'no parent'}'",
            severity='warning',
            user=changed_by,
            context={
                'role': current.slug,
                'old_parent': old_parent.slug if old_parent else None,
                'new_parent': parent.slug if parent else None,
            },
        )
        return graph

    @transaction.atomic
    def update_priority(self, role: Role, priority: int, changed_by=None) -> Role:
        """
        Change a role's priority; it must stay below its parent and above its children.

        Raises:
            HierarchyIntegrityError
        """
        graph = self._lock_roles()
        current = graph.get(role)
        parent = graph.parent(current)

        if parent is not None and not parent.priority > priority:
            self._reject(
                f"Priority {priority} is not below parent '{parent.slug}' ({parent.priority})",
                HierarchyIntegrityError.PRIORITY, current, parent
            )
        for child in graph.children(current):
            if not priority > child.priority:
                self._reject(
                    f"Priority {priority} is not above child '{child.slug}' ({child.priority})",
                    HierarchyIntegrityError.PRIORITY, child, current
                )

        old_priority = current.priority
        current.priority = priority
        current.save(update_fields=['priority', 'updated_at'])
        role.priority = priority

        self.audit.append(
            action='role_priority_changed',
            description=f"Role '{current.name}' priority {old_priority} -> {priority}",
            user=changed_by,
            context={'role': current.slug, 'old': old_priority, 'new': priority},
        )
        return current

    @transaction.atomic
    def rename(self, role: Role, name: Optional[str] = None, slug: Optional[str] = None,
               changed_by=None) -> Role:
        """
        Rename a role. The super-admin role keeps its reserved slug.

        Raises:
            HierarchyIntegrityError: When the reserved slug would be lost or taken
            ValidationError: When the slug is already in use
        """
        role = Role.objects.select_for_update().get(pk=role.pk)
        new_slug = slug or role.slug
        if new_slug != role.slug:
            self._check_super_admin(new_slug, role.is_super_admin, role)
            if Role.objects_with_deleted.filter(slug=new_slug).exclude(pk=role.pk).exists():
                raise ValidationError(f"Role slug '{new_slug}' is already taken", details={'slug': new_slug})

        old = {'name': role.name, 'slug': role.slug}
        role.name = name or role.name
        role.slug = new_slug
        role.save(update_fields=['name', 'slug', 'updated_at'])

        self.audit.append(
            action='role_renamed',
            description=f"Role '{old['name']}' renamed to '{role.name}'",
            user=changed_by,
            context={'old': old, 'new': {'name': role.name, 'slug': role.slug}},
        )
        return role

    @transaction.atomic
    def delete_role(self, role: Role, deleted_by=None) -> None:
        """
        Soft delete a role.

        Raises:
            ValidationError: For system roles, roles with children or roles still assigned
        """
        graph = self._lock_roles()
        current = graph.get(role)

        if current.is_system:
            raise ValidationError(
                f"System role '{current.slug}' cannot be deleted",
                details={'role': current.slug}
            )
        if graph.children(current):
            raise ValidationError(
                f"Role '{current.slug}' still has child roles",
                details={'role': current.slug, 'children': [c.slug for c in graph.children(current)]}
            )
        if current.users.exists():
            raise ValidationError(
                f"Role '{current.slug}' is still assigned to users",
                details={'role': current.slug}
            )

        current.delete()
        self.audit.append(
            action='role_deleted',
            description=f"Role '{current.name}' deleted",
            severity='warning',
            user=deleted_by,
            context={'role': current.slug},
        )

    @staticmethod
    def hierarchy_path(role: Role) -> List[str]:
        """Role names from the root down to ``role``."""
        return RoleGraph.load().hierarchy_path(role)

    @staticmethod
    def role_tree() -> List[dict]:
        """Nested dict forest of every role, for display."""
        return RoleGraph.load().tree()
