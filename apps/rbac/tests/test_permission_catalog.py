"""
Tests for the permission catalog and dependency validator.
"""
import pytest
from hypothesis import given, settings, strategies as st

from apps.core.exceptions import DependencyError, ValidationError
from apps.rbac.models import AuditLog, Permission, PermissionDependency
from apps.rbac.services.permission_catalog import DependencyGraph, PermissionCatalog


@st.composite
def acyclic_graphs(draw):
    """
    A dependency DAG over integer ids plus a candidate subset.

    Edges only point from lower to higher ids, so no cycle can form.
    """
    size = draw(st.integers(min_value=1, max_value=12))
    pairs = [(i, j) for i in range(size) for j in range(i + 1, size)]
    edges = draw(st.lists(st.sampled_from(pairs), unique=True, max_size=30)) if pairs else []
    subset = draw(st.sets(st.integers(min_value=0, max_value=size - 1)))
    names = {i: f'perm-{i}' for i in range(size)}
    return DependencyGraph(edges, names), subset


class TestDependencyGraph:
    """In-memory graph behaviour."""

    def test_closure_follows_chain(self):
        graph = DependencyGraph([(1, 2), (2, 3)], {1: 'a', 2: 'b', 3: 'c'})
        assert graph.closure({1}) == {1, 2, 3}
        assert graph.closure({3}) == {3}

    def test_validate_reports_each_missing_prerequisite(self):
        graph = DependencyGraph([(1, 2), (1, 3)], {1: 'a', 2: 'b', 3: 'c'})
        errors = graph.validate({1, 3})
        assert errors == [DependencyError('a', 'b')]

    def test_validate_does_not_add_prerequisites(self):
        graph = DependencyGraph([(1, 2)], {1: 'a', 2: 'b'})
        candidate = {1}
        graph.validate(candidate)
        assert candidate == {1}

    def test_validate_only_direct_edges(self):
        """Only direct prerequisites are reported; transitive ones surface once present."""
        graph = DependencyGraph([(1, 2), (2, 3)], {1: 'a', 2: 'b', 3: 'c'})
        assert graph.validate({1}) == [DependencyError('a', 'b')]
        assert graph.validate({1, 2}) == [DependencyError('b', 'c')]

    def test_would_create_cycle(self):
        graph = DependencyGraph([(1, 2), (2, 3)], {})
        assert graph.would_create_cycle(3, 1)
        assert graph.would_create_cycle(2, 2)
        assert not graph.would_create_cycle(1, 3)

    def test_find_cycle_returns_loop(self):
        graph = DependencyGraph([(1, 2), (2, 3), (3, 1)], {})
        cycle = graph.find_cycle()
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {1, 2, 3}

    def test_closure_with_stored_cycle_raises(self):
        graph = DependencyGraph([(1, 2), (2, 1)], {1: 'a', 2: 'b'})
        with pytest.raises(ValidationError) as exc:
            graph.closure({1})
        assert set(exc.value.details['cycle']) == {'a', 'b'}

    @settings(max_examples=100, deadline=None)
    @given(acyclic_graphs())
    def test_valid_sets_are_closed(self, data):
        graph, subset = data
        if not graph.validate(subset):
            assert graph.closure(subset) == subset

    @settings(max_examples=100, deadline=None)
    @given(acyclic_graphs())
    def test_closure_always_validates(self, data):
        graph, subset = data
        closed = graph.closure(subset)
        assert subset <= closed
        assert graph.validate(closed) == []


@pytest.mark.django_db
class TestPermissionCatalog:
    """Catalog service backed by the database."""

    def test_get_unknown_permission(self, audit):
        with pytest.raises(ValidationError) as exc:
            PermissionCatalog(audit=audit).get('fly-helicopter')
        assert exc.value.details['permission'] == 'fly-helicopter'

    def test_resolve_names_lists_every_unknown(self, audit, lab_permissions):
        catalog = PermissionCatalog(audit=audit)
        with pytest.raises(ValidationError) as exc:
            catalog.resolve_names(['view-laboratory', 'nope', 'also-nope'])
        assert exc.value.details['unknown'] == ['nope', 'also-nope']

    def test_lab_scenario_validate(self, audit, lab_permissions):
        catalog = PermissionCatalog(audit=audit)

        errors = catalog.validate(['edit-lab-tests'])

        assert len(errors) == 1
        assert errors[0].permission == 'edit-lab-tests'
        assert errors[0].depends_on == 'view-laboratory'
        assert catalog.validate(['edit-lab-tests', 'view-laboratory']) == []

    def test_closure_by_name(self, audit, lab_permissions):
        catalog = PermissionCatalog(audit=audit)
        assert catalog.closure(['edit-lab-tests']) == {'edit-lab-tests', 'view-laboratory'}

    def test_add_dependency_audited(self, audit, make_permission):
        view = make_permission('view-patients')
        edit = make_permission('edit-patients')
        catalog = PermissionCatalog(audit=audit)

        catalog.add_dependency(edit, view)
        catalog.add_dependency(edit, view)

        assert PermissionDependency.objects.filter(permission=edit, depends_on=view).count() == 1
        assert AuditLog.objects.filter(action='permission_dependency_added').count() == 1

    def test_add_dependency_rejects_cycle(self, audit, lab_permissions):
        catalog = PermissionCatalog(audit=audit)
        with pytest.raises(ValidationError):
            catalog.add_dependency(lab_permissions['view'], lab_permissions['edit'])
        assert not PermissionDependency.objects.filter(permission=lab_permissions['view']).exists()

    def test_add_dependency_rejects_self_loop(self, audit, lab_permissions):
        catalog = PermissionCatalog(audit=audit)
        with pytest.raises(ValidationError):
            catalog.add_dependency(lab_permissions['view'], lab_permissions['view'])

    def test_remove_dependency(self, audit, lab_permissions):
        catalog = PermissionCatalog(audit=audit)
        assert catalog.remove_dependency(lab_permissions['edit'], lab_permissions['view'])
        assert not catalog.remove_dependency(lab_permissions['edit'], lab_permissions['view'])
        assert catalog.validate(['edit-lab-tests']) == []

    def test_segregation_conflicts(self, audit, make_permission):
        make_permission('delete-users', resource='users', segregation_group='user_admin', is_critical=True)
        make_permission('manage-role-permissions', resource='role-permissions',
                        segregation_group='user_admin', is_critical=True)
        make_permission('create-users', resource='users', segregation_group='user_admin', is_critical=True)
        catalog = PermissionCatalog(audit=audit)

        assert catalog.segregation_conflicts(['delete-users', 'create-users']) == {}
        assert catalog.segregation_conflicts(['delete-users', 'manage-role-permissions']) == {
            'user_admin': ['delete-users', 'manage-role-permissions'],
        }

    def test_delete_permission(self, audit, make_permission):
        ordinary = make_permission('view-reports')
        critical = make_permission('delete-patients', is_critical=True)
        catalog = PermissionCatalog(audit=audit)

        with pytest.raises(ValidationError):
            catalog.delete_permission(critical)

        catalog.delete_permission(ordinary)
        assert Permission.objects.by_name('view-reports') is None
        assert AuditLog.objects.filter(action='permission_deleted').count() == 1

    def test_delete_permission_refused_while_required(self, audit, lab_permissions):
        catalog = PermissionCatalog(audit=audit)

        with pytest.raises(ValidationError) as exc:
            catalog.delete_permission(lab_permissions['view'])

        assert exc.value.details['dependents'] == ['edit-lab-tests']
        assert Permission.objects.by_name('view-laboratory') is not None

        catalog.delete_permission(lab_permissions['edit'])
        catalog.delete_permission(lab_permissions['view'])
        assert Permission.objects.by_name('view-laboratory') is None

    def test_edges_to_deleted_permissions_ignored(self, audit, lab_permissions):
        lab_permissions['view'].delete()

        graph = DependencyGraph.load()

        assert graph.requires(lab_permissions['edit'].id) == set()
        assert PermissionCatalog(audit=audit).validate(['edit-lab-tests']) == []
