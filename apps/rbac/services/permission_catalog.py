"""
Permission catalog and dependency validation.

The "requires" relation between permissions is held as an explicit
adjacency list keyed by permission id. Closures are computed with a
breadth-first walk; cycles are rejected both when edges are added and
when a closure reaches one.
"""
import logging
from collections import defaultdict, deque
from typing import Dict, Iterable, List, Optional, Set
from uuid import UUID

from django.db import transaction

from apps.core.exceptions import DependencyError, ValidationError
from apps.rbac.models import Permission, PermissionDependency
from apps.rbac.services.audit import AuditTrail, create_audit_trail

logger = logging.getLogger(__name__)


class DependencyGraph:
    """
    Snapshot of permission dependency edges.

    ``edges`` is an iterable of ``(permission_id, depends_on_id)`` pairs and
    ``names`` maps permission ids to names for error reporting.
    """

    def __init__(self, edges: Iterable[tuple], names: Dict[UUID, str]):
        self.names = dict(names)
        self._requires: Dict[UUID, Set[UUID]] = defaultdict(set)
        for permission_id, depends_on_id in edges:
            self._requires[permission_id].add(depends_on_id)

    @classmethod
    def load(cls) -> 'DependencyGraph':
        # Edges touching a soft-deleted permission are not part of the live catalog
        edges = PermissionDependency.objects.filter(
            permission__deleted_at__isnull=True,
            depends_on__deleted_at__isnull=True,
        ).values_list('permission_id', 'depends_on_id')
        names = dict(Permission.objects.values_list('id', 'name'))
        return cls(edges, names)

    def requires(self, permission_id: UUID) -> Set[UUID]:
        """Direct prerequisites of a permission."""
        return set(self._requires.get(permission_id, ()))

    def add_edge(self, permission_id: UUID, depends_on_id: UUID) -> None:
        self._requires[permission_id].add(depends_on_id)

    def reaches(self, start: UUID, target: UUID) -> bool:
        """Whether ``target`` is reachable from ``start`` along requires edges."""
        seen = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            for nxt in self._requires.get(current, ()):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return False

    def would_create_cycle(self, permission_id: UUID, depends_on_id: UUID) -> bool:
        return permission_id == depends_on_id or self.reaches(depends_on_id, permission_id)

    def find_cycle(self, start_ids: Optional[Iterable[UUID]] = None) -> Optional[List[UUID]]:
        """
        Return one cycle reachable from ``start_ids`` (all nodes by default), or None.

        Iterative three-colour depth-first search.
        """
        white, grey, black = 0, 1, 2
        colour: Dict[UUID, int] = defaultdict(int)
        starts = list(start_ids) if start_ids is not None else list(self._requires)

        for root in starts:
            if colour[root] != white:
                continue
            path = [root]
            stack = [(root, iter(self._requires.get(root, ())))]
            colour[root] = grey
            while stack:
                node, children = stack[-1]
                advanced = False
                for child in children:
                    if colour[child] == grey:
                        return path[path.index(child):] + [child]
                    if colour[child] == white:
                        colour[child] = grey
                        path.append(child)
                        stack.append((child, iter(self._requires.get(child, ()))))
                        advanced = True
                        break
                if not advanced:
                    colour[node] = black
                    path.pop()
                    stack.pop()
        return None

    def closure(self, permission_ids: Iterable[UUID]) -> Set[UUID]:
        """
        Expand a set along requires edges until fixpoint.

        Raises:
            ValidationError: If a dependency cycle is reachable from the set
        """
        start = set(permission_ids)
        cycle = self.find_cycle(start)
        if cycle:
            raise ValidationError(
                "Permission dependency cycle detected",
                details={'cycle': [self.names.get(pid, str(pid)) for pid in cycle]}
            )

        result = set(start)
        queue = deque(start)
        while queue:
            current = queue.popleft()
            for dep in self._requires.get(current, ()):
                if dep not in result:
                    result.add(dep)
                    queue.append(dep)
        return result

    def validate(self, permission_ids: Iterable[UUID]) -> List[DependencyError]:
        """
        Report every direct prerequisite missing from the set.

        Nothing is added to the set; one DependencyError per (permission,
        missing prerequisite) pair, ordered by name.
        """
        candidate = set(permission_ids)
        errors = []
        for permission_id in candidate:
            for dep in self._requires.get(permission_id, ()):
                if dep not in candidate:
                    errors.append(DependencyError(
                        self.names.get(permission_id, str(permission_id)),
                        self.names.get(dep, str(dep)),
                    ))
        return sorted(errors, key=lambda e: (e.permission, e.depends_on))


class PermissionCatalog:
    """
    Service for permission lookups, dependency edges and duty separation.
    """

    def __init__(self, audit: Optional[AuditTrail] = None):
        self.audit = audit or create_audit_trail()

    def get(self, name: str) -> Permission:
        """
        Raises:
            ValidationError: If no permission has this name
        """
        permission = Permission.objects.by_name(name) if name else None
        if permission is None:
            raise ValidationError(
                f"Permission '{name}' does not exist",
                details={'permission': name}
            )
        return permission

    def resolve_names(self, names: Iterable[str]) -> List[Permission]:
        """Look up many names at once; every name must exist."""
        names = list(dict.fromkeys(names))
        found = {p.name: p for p in Permission.objects.by_names(names)}
        unknown = [name for name in names if name not in found]
        if unknown:
            raise ValidationError(
                f"Unknown permissions: {', '.join(unknown)}",
                details={'unknown': unknown}
            )
        return [found[name] for name in names]

    def names_for(self, permission_ids: Iterable) -> Set[str]:
        return set(
            Permission.objects.filter(id__in=list(permission_ids)).values_list('name', flat=True)
        )

    def closure(self, names: Iterable[str]) -> Set[str]:
        """Dependency closure of a set of permission names."""
        permissions = self.resolve_names(names)
        graph = DependencyGraph.load()
        return {graph.names[pid] for pid in graph.closure(p.id for p in permissions)}

    def validate(self, names: Iterable[str]) -> List[DependencyError]:
        """Missing prerequisites for a set of permission names."""
        permissions = self.resolve_names(names)
        return DependencyGraph.load().validate(p.id for p in permissions)

    def validate_ids(self, permission_ids: Iterable) -> List[DependencyError]:
        return DependencyGraph.load().validate(permission_ids)

    @transaction.atomic
    def add_dependency(self, permission: Permission, depends_on: Permission,
                       created_by=None) -> PermissionDependency:
        """
        Record that ``permission`` requires ``depends_on``.

        Raises:
            ValidationError: On a self-loop or an edge that would close a cycle
        """
        if permission.id == depends_on.id:
            raise ValidationError(
                f"Permission '{permission.name}' cannot depend on itself",
                details={'permission': permission.name}
            )

        # Serialize concurrent edge additions
        list(Permission.objects.select_for_update().filter(id__in=[permission.id, depends_on.id]))

        graph = DependencyGraph.load()
        if graph.would_create_cycle(permission.id, depends_on.id):
            raise ValidationError(
                f"Dependency '{permission.name}' -> '{depends_on.name}' would create a cycle",
                details={'permission': permission.name, 'depends_on': depends_on.name}
            )

        edge, created = PermissionDependency.objects.get_or_create(
            permission=permission,
            depends_on=depends_on,
        )
        if created:
            self.audit.append(
                action='permission_dependency_added',
                description=f"'{permission.name}' now requires '{depends_on.name}'",
                user=created_by,
                context={'permission': permission.name, 'depends_on': depends_on.name},
            )
        return edge

    @transaction.atomic
    def remove_dependency(self, permission: Permission, depends_on: Permission, removed_by=None) -> bool:
        deleted, _ = PermissionDependency.objects.filter(
            permission=permission, depends_on=depends_on
        ).hard_delete()
        if deleted:
            self.audit.append(
                action='permission_dependency_removed',
                description=f"'{permission.name}' no longer requires '{depends_on.name}'",
                user=removed_by,
                context={'permission': permission.name, 'depends_on': depends_on.name},
            )
        return bool(deleted)

    def segregation_conflicts(self, names: Iterable[str]) -> Dict[str, List[str]]:
        """
        Segregation groups in which the set holds critical permissions over
        more than one resource.

        Returns:
            Mapping of group name to the sorted conflicting permission names
        """
        by_group = defaultdict(list)
        critical = Permission.objects.by_names(names).filter(is_critical=True).exclude(segregation_group='')
        for permission in critical:
            by_group[permission.segregation_group].append(permission)

        return {
            group: sorted(p.name for p in permissions)
            for group, permissions in by_group.items()
            if len({p.resource for p in permissions}) > 1
        }

    @transaction.atomic
    def delete_permission(self, permission: Permission, deleted_by=None) -> None:
        """
        Soft delete a permission.

        Raises:
            ValidationError: If the permission is critical or live permissions depend on it
        """
        if permission.is_critical:
            raise ValidationError(
                f"Critical permission '{permission.name}' cannot be deleted",
                details={'permission': permission.name}
            )
        dependents = sorted(
            PermissionDependency.objects.filter(
                depends_on=permission, permission__deleted_at__isnull=True
            ).values_list('permission__name', flat=True)
        )
        if dependents:
            raise ValidationError(
                f"Permission '{permission.name}' is required by {', '.join(dependents)}",
                details={'permission': permission.name, 'dependents': dependents}
            )
        permission.delete()
        self.audit.append(
            action='permission_deleted',
            description=f"Permission '{permission.name}' deleted",
            severity='warning',
            user=deleted_by,
            context={'permission': permission.name},
        )
