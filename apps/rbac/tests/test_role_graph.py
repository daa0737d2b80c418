"""
Tests for the role graph and role hierarchy service.

Covers tree walks, inheritance checks, re-parenting under lock,
priority changes, super-admin reservation and role deletion.
"""
import pytest
from hypothesis import given, settings, strategies as st

from apps.core.exceptions import HierarchyIntegrityError, ValidationError
from apps.rbac.models import AuditLog, Role
from apps.rbac.services.role_graph import RoleGraph, RoleHierarchyService


def build_role(slug, priority, parent=None, is_system=False):
    """Helper to build an unsaved role for in-memory graphs."""
    return Role(
        name=slug.title(),
        slug=slug,
        priority=priority,
        is_system=is_system,
        parent_role_id=parent.id if parent is not None else None,
    )


class TestRoleGraphWalks:
    """Tree walks over an in-memory graph (no database)."""

    def setup_method(self):
        self.root = build_role('root', 100, is_system=True)
        self.sub = build_role('sub', 90, self.root, is_system=True)
        self.pharmacy = build_role('pharmacy', 60, self.sub)
        self.lab = build_role('lab', 60, self.sub)
        self.tech = build_role('tech', 30, self.lab)
        self.graph = RoleGraph([self.root, self.sub, self.pharmacy, self.lab, self.tech])

    def test_parent_and_children(self):
        assert self.graph.parent(self.tech).slug == 'lab'
        assert self.graph.parent(self.root) is None
        assert {r.slug for r in self.graph.children(self.sub)} == {'pharmacy', 'lab'}

    def test_ancestors_walk_to_root(self):
        assert [r.slug for r in self.graph.ancestors(self.tech)] == ['lab', 'sub', 'root']
        assert self.graph.ancestors(self.root) == []

    def test_descendants_breadth_first(self):
        slugs = [r.slug for r in self.graph.descendants(self.sub)]
        assert set(slugs) == {'pharmacy', 'lab', 'tech'}
        assert slugs.index('tech') > slugs.index('lab')

    def test_hierarchy_level(self):
        assert self.graph.hierarchy_level(self.root) == 1
        assert self.graph.hierarchy_level(self.sub) == 2
        assert self.graph.hierarchy_level(self.tech) == 4

    def test_hierarchy_path(self):
        assert self.graph.hierarchy_path(self.tech) == ['Root', 'Sub', 'Lab', 'Tech']

    def test_tree_nests_children(self):
        forest = self.graph.tree()
        assert len(forest) == 1
        sub = forest[0]['children'][0]
        assert sub['slug'] == 'sub'
        assert {c['slug'] for c in sub['children']} == {'pharmacy', 'lab'}

    def test_unknown_role_raises_validation_error(self):
        stranger = build_role('stranger', 10)
        with pytest.raises(ValidationError):
            self.graph.ancestors(stranger)

    def test_corrupted_loop_detected(self):
        """A loop already stored in the table is reported, not walked forever."""
        a = build_role('a', 10)
        b = build_role('b', 20, a)
        a.parent_role_id = b.id
        graph = RoleGraph([a, b])

        with pytest.raises(HierarchyIntegrityError) as exc:
            graph.ancestors(a)
        assert exc.value.reason == HierarchyIntegrityError.CYCLE


class TestCanInherit:
    """Ordering of the three inheritance checks."""

    def test_child_below_higher_priority_parent(self):
        a = build_role('a', 100, is_system=True)
        b = build_role('b', 90, a)
        graph = RoleGraph([a, b])
        assert graph.can_inherit(b, a)

    def test_system_child_under_non_system_parent(self):
        a = build_role('a', 100, is_system=True)
        b = build_role('b', 90, a)
        graph = RoleGraph([a, b])
        assert graph.inheritance_violation(a, b) == HierarchyIntegrityError.SYSTEM_PARENT

    def test_parent_below_child_fails_priority(self):
        """A(100, system) under its own child B(90, system) is a priority inversion."""
        a = build_role('a', 100, is_system=True)
        b = build_role('b', 90, a, is_system=True)
        graph = RoleGraph([a, b])
        assert graph.inheritance_violation(a, b) == HierarchyIntegrityError.PRIORITY

    def test_higher_ancestor_as_parent_is_a_cycle(self):
        a = build_role('a', 100)
        b = build_role('b', 90, a)
        c = build_role('c', 80, b)
        graph = RoleGraph([a, b, c])

        assert graph.inheritance_violation(c, a) == HierarchyIntegrityError.CYCLE
        assert graph.can_inherit(c, b)

    def test_self_parent_is_a_cycle(self):
        a = build_role('a', 100)
        graph = RoleGraph([a])
        assert graph.inheritance_violation(a, a) == HierarchyIntegrityError.CYCLE

    def test_equal_priority_rejected(self):
        a = build_role('a', 60)
        b = build_role('b', 60)
        graph = RoleGraph([a, b])
        assert graph.inheritance_violation(b, a) == HierarchyIntegrityError.PRIORITY


@st.composite
def role_moves(draw):
    """Priorities for a set of roles plus a sequence of attempted re-parent moves."""
    priorities = draw(st.lists(st.integers(min_value=0, max_value=20), min_size=2, max_size=8))
    size = len(priorities)
    moves = draw(st.lists(
        st.tuples(st.integers(0, size - 1), st.one_of(st.none(), st.integers(0, size - 1))),
        max_size=25,
    ))
    systems = draw(st.lists(st.booleans(), min_size=size, max_size=size))
    return priorities, systems, moves


class TestHierarchyConsistencyProperty:
    """Any sequence of moves accepted by can_inherit keeps the tree valid."""

    @settings(max_examples=75, deadline=None)
    @given(role_moves())
    def test_accepted_moves_keep_priority_order_and_no_cycles(self, data):
        priorities, systems, moves = data
        roles = [
            build_role(f'r{i}', priority, is_system=system)
            for i, (priority, system) in enumerate(zip(priorities, systems))
        ]
        graph = RoleGraph(roles)

        for child_index, parent_index in moves:
            child = roles[child_index]
            parent = roles[parent_index] if parent_index is not None else None
            if parent is None or graph.can_inherit(child, parent):
                graph.set_parent(child, parent)

        for role in roles:
            ancestors = graph.ancestors(role)
            assert role.id not in {a.id for a in ancestors}
            parent = graph.parent(role)
            if parent is not None:
                assert role.priority < parent.priority
        graph.validate_all()


@pytest.mark.django_db
class TestRoleHierarchyService:
    """Role writes through the service."""

    def test_create_role_under_parent(self, audit, make_role):
        root = make_role('hospital-admin', priority=80, is_system=True)
        service = RoleHierarchyService(audit=audit)

        role = service.create_role('Nurse', 'nurse', priority=40, parent=root)

        assert role.parent_role_id == root.id
        assert AuditLog.objects.filter(action='role_created').count() == 1

    def test_create_role_with_inverted_priority_rejected(self, audit, make_role):
        root = make_role('hospital-admin', priority=50)
        service = RoleHierarchyService(audit=audit)

        with pytest.raises(HierarchyIntegrityError) as exc:
            service.create_role('Director', 'director', priority=70, parent=root)

        assert exc.value.reason == HierarchyIntegrityError.PRIORITY
        assert not Role.objects.filter(slug='director').exists()

    def test_create_role_unknown_field_rejected(self, audit):
        service = RoleHierarchyService(audit=audit)
        with pytest.raises(ValidationError):
            service.create_role('Nurse', 'nurse', priority=40, favourite_colour='blue')

    def test_reparent_a_under_b_is_priority_inversion(self, audit, make_role):
        """A(100, system) and B(90, parent A): moving A under B is refused."""
        a = make_role('role-a', priority=100, is_system=True)
        b = make_role('role-b', priority=90, parent=a, is_system=True)
        service = RoleHierarchyService(audit=audit)

        assert RoleGraph.load().can_inherit(b, a)
        with pytest.raises(HierarchyIntegrityError) as exc:
            service.set_parent(a, b)
        assert exc.value.reason == HierarchyIntegrityError.PRIORITY

        a.refresh_from_db()
        assert a.parent_role_id is None
        assert not AuditLog.objects.filter(action='role_reparented').exists()

    def test_reparent_system_role_under_non_system_child(self, audit, make_role):
        a = make_role('role-a', priority=100, is_system=True)
        b = make_role('role-b', priority=90, parent=a)
        service = RoleHierarchyService(audit=audit)

        with pytest.raises(HierarchyIntegrityError) as exc:
            service.set_parent(a, b)
        assert exc.value.reason == HierarchyIntegrityError.SYSTEM_PARENT

    def test_reparent_valid_move(self, audit, make_role):
        root = make_role('root', priority=100, is_system=True)
        left = make_role('left', priority=80, parent=root)
        right = make_role('right', priority=70, parent=root)
        service = RoleHierarchyService(audit=audit)

        graph = service.set_parent(right, left)

        right.refresh_from_db()
        assert right.parent_role_id == left.id
        assert [r.slug for r in graph.ancestors(right)] == ['left', 'root']
        assert service.hierarchy_path(right) == ['Root', 'Left', 'Right']

    def test_detach_role(self, audit, make_role):
        root = make_role('root', priority=100)
        child = make_role('child', priority=50, parent=root)
        service = RoleHierarchyService(audit=audit)

        service.set_parent(child, None)

        child.refresh_from_db()
        assert child.parent_role_id is None
        assert len(service.role_tree()) == 2

    def test_update_priority_between_parent_and_children(self, audit, make_role):
        root = make_role('root', priority=100)
        middle = make_role('middle', priority=60, parent=root)
        make_role('leaf', priority=20, parent=middle)
        service = RoleHierarchyService(audit=audit)

        service.update_priority(middle, 70)
        middle.refresh_from_db()
        assert middle.priority == 70

        with pytest.raises(HierarchyIntegrityError):
            service.update_priority(middle, 100)
        with pytest.raises(HierarchyIntegrityError):
            service.update_priority(middle, 20)
        middle.refresh_from_db()
        assert middle.priority == 70

    def test_second_super_admin_rejected(self, audit, super_admin_role):
        service = RoleHierarchyService(audit=audit)
        with pytest.raises(HierarchyIntegrityError) as exc:
            service.create_role('Other Admin', 'other-admin', priority=100, is_super_admin=True)
        assert exc.value.reason == HierarchyIntegrityError.RESERVED_ROLE

    def test_reserved_slug_rejected_for_ordinary_role(self, audit):
        service = RoleHierarchyService(audit=audit)
        with pytest.raises(HierarchyIntegrityError) as exc:
            service.create_role('Impostor', 'super-admin', priority=10)
        assert exc.value.reason == HierarchyIntegrityError.RESERVED_ROLE

    def test_super_admin_cannot_be_renamed_away(self, audit, super_admin_role):
        service = RoleHierarchyService(audit=audit)
        with pytest.raises(HierarchyIntegrityError):
            service.rename(super_admin_role, slug='chief')

        renamed = service.rename(super_admin_role, name='Chief Administrator')
        assert renamed.slug == 'super-admin'
        assert renamed.name == 'Chief Administrator'

    def test_delete_role_rules(self, audit, make_role, make_user):
        root = make_role('root', priority=100, is_system=True)
        parent = make_role('parent', priority=60, parent=root)
        child = make_role('child', priority=40, parent=parent)
        make_user('Assigned', role=child)
        service = RoleHierarchyService(audit=audit)

        with pytest.raises(ValidationError):
            service.delete_role(root)
        with pytest.raises(ValidationError):
            service.delete_role(parent)
        with pytest.raises(ValidationError):
            service.delete_role(child)

        spare = make_role('spare', priority=10, parent=parent)
        service.delete_role(spare)
        assert not Role.objects.filter(slug='spare').exists()
        assert Role.objects_with_deleted.filter(slug='spare').exists()
