"""
Management command to seed the hospital RBAC catalog.

Creates the permission catalog, dependency edges, the system and
department roles, their hierarchy and their role-permission mapping.
This command is idempotent and safe to re-run.
"""
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from apps.core.exceptions import HierarchyIntegrityError
from apps.rbac.models import Permission, PermissionDependency, Role, RolePermission
from apps.rbac.services.permission_catalog import DependencyGraph
from apps.rbac.services.role_graph import RoleGraph


def _perm(name, description, resource, action, category, module, group, risk,
          requires_approval=False, is_critical=False, hipaa_impact='none'):
    return {
        'name': name,
        'description': description,
        'resource': resource,
        'action': action,
        'category': category,
        'module': module,
        'segregation_group': group,
        'risk_level': risk,
        'requires_approval': requires_approval,
        'is_critical': is_critical,
        'hipaa_impact': hipaa_impact,
    }


class Command(BaseCommand):
    help = 'Seed hospital permissions, roles and hierarchy (idempotent)'

    CANONICAL_PERMISSIONS = [
        # User Management
        _perm('view-users', 'View user list', 'users', 'view', 'User Management', 'users', 'user_management', 2),
        _perm('create-users', 'Create new users', 'users', 'create', 'User Management', 'users',
              'user_management', 3, requires_approval=True),
        _perm('edit-users', 'Edit existing users', 'users', 'edit', 'User Management', 'users', 'user_management', 2),
        _perm('delete-users', 'Delete users', 'users', 'delete', 'User Management', 'users',
              'user_management', 3, requires_approval=True, is_critical=True),

        # Role Management
        _perm('view-roles', 'View role list', 'roles', 'view', 'Role Management', 'roles', 'role_management', 1),
        _perm('create-roles', 'Create new roles', 'roles', 'create', 'Role Management', 'roles',
              'role_management', 3, requires_approval=True, is_critical=True),
        _perm('edit-roles', 'Edit existing roles', 'roles', 'edit', 'Role Management', 'roles', 'role_management', 2),
        _perm('delete-roles', 'Delete roles', 'roles', 'delete', 'Role Management', 'roles',
              'role_management', 3, requires_approval=True, is_critical=True),

        # Patient Management
        _perm('view-patients', 'View patient list', 'patients', 'view', 'Patient Management', 'patients',
              'patient_care', 1, hipaa_impact='moderate'),
        _perm('create-patients', 'Create new patients', 'patients', 'create', 'Patient Management', 'patients',
              'patient_care', 1, hipaa_impact='moderate'),
        _perm('edit-patients', 'Edit existing patients', 'patients', 'edit', 'Patient Management', 'patients',
              'patient_care', 2, hipaa_impact='high'),
        _perm('delete-patients', 'Delete patients', 'patients', 'delete', 'Patient Management', 'patients',
              'patient_care', 3, requires_approval=True, hipaa_impact='high'),

        # Pharmacy Management
        _perm('view-pharmacy', 'View pharmacy section', 'pharmacy', 'view', 'Pharmacy Management', 'pharmacy',
              'pharmacy_operations', 1),
        _perm('manage-medicines', 'Manage medicine inventory', 'medicines', 'manage', 'Pharmacy Management',
              'pharmacy', 'pharmacy_operations', 2),
        _perm('process-prescriptions', 'Process prescriptions', 'prescriptions', 'process', 'Pharmacy Management',
              'pharmacy', 'pharmacy_operations', 2, hipaa_impact='moderate'),

        # Laboratory Management
        _perm('view-laboratory', 'View laboratory section', 'laboratory', 'view', 'Laboratory Management',
              'laboratory', 'laboratory_operations', 1),
        _perm('manage-lab-tests', 'Manage lab tests', 'lab-tests', 'manage', 'Laboratory Management',
              'laboratory', 'laboratory_operations', 2),
        _perm('process-test-results', 'Process test results', 'lab-test-results', 'process',
              'Laboratory Management', 'laboratory', 'laboratory_operations', 2, hipaa_impact='high'),

        # RBAC Management
        _perm('view-rbac-dashboard', 'View RBAC dashboard', 'rbac', 'view', 'RBAC Management', 'rbac',
              'rbac_management', 1),
        _perm('manage-role-permissions', 'Manage role permissions', 'role-permissions', 'manage',
              'RBAC Management', 'rbac', 'rbac_management', 3, requires_approval=True, is_critical=True),
        _perm('view-permission-matrix', 'View permission matrix', 'permissions', 'view', 'RBAC Management',
              'rbac', 'rbac_management', 1),
        _perm('view-activity-logs', 'View audit logs', 'audit-logs', 'view', 'RBAC Management', 'rbac',
              'rbac_management', 1),
    ]

    # (permission, requires)
    DEPENDENCIES = [
        ('create-users', 'view-users'),
        ('edit-users', 'view-users'),
        ('delete-users', 'view-users'),
        ('create-roles', 'view-roles'),
        ('edit-roles', 'view-roles'),
        ('delete-roles', 'view-roles'),
        ('create-patients', 'view-patients'),
        ('edit-patients', 'view-patients'),
        ('delete-patients', 'view-patients'),
        ('manage-medicines', 'view-pharmacy'),
        ('process-prescriptions', 'view-pharmacy'),
        ('manage-lab-tests', 'view-laboratory'),
        ('process-test-results', 'view-laboratory'),
        ('manage-role-permissions', 'view-roles'),
        ('manage-role-permissions', 'view-rbac-dashboard'),
        ('view-permission-matrix', 'view-rbac-dashboard'),
        ('view-activity-logs', 'view-rbac-dashboard'),
    ]

    DEFAULT_ROLES = {
        'super-admin': {
            'name': 'Super Admin',
            'description': 'Ultimate system authority with unrestricted access',
            'is_system': True,
            'is_super_admin': True,
            'priority': 100,
            'module_access': ['*'],
            'data_visibility_scope': ['all_system_data'],
            'user_management_capabilities': ['create_users', 'delete_users', 'assign_roles', 'reset_passwords'],
            'system_configuration_access': ['database_config', 'security_settings', 'backup_restore', 'maintenance'],
            'reporting_permissions': ['all_system_reports', 'audit_logs', 'performance_metrics', 'compliance'],
            'role_specific_limitations': ['cannot_delete_own_account', 'cannot_remove_super_admin_role'],
            'mfa_required': True,
            'session_timeout_minutes': 60,
        },
        'sub-super-admin': {
            'name': 'Sub Super Admin',
            'description': 'Senior administrative role with broad system access',
            'is_system': True,
            'priority': 90,
            'module_access': [
                'users', 'roles', 'patients', 'doctors', 'appointments',
                'billing', 'pharmacy', 'laboratory', 'reports', 'rbac',
            ],
            'data_visibility_scope': ['all_departments'],
            'user_management_capabilities': ['create_users', 'assign_roles', 'reset_passwords'],
            'system_configuration_access': ['department_settings', 'ui_customization', 'report_templates'],
            'reporting_permissions': ['department_reports', 'user_activity', 'operational_metrics'],
            'role_specific_limitations': ['cannot_modify_super_admin', 'limited_financial_operations'],
            'mfa_required': True,
            'session_timeout_minutes': 90,
        },
        'pharmacy-admin': {
            'name': 'Pharmacy Admin',
            'description': 'Specialized administrator for pharmaceutical operations',
            'priority': 60,
            'module_access': [
                'pharmacy', 'medicines', 'suppliers', 'purchase_orders',
                'stock_management', 'prescriptions',
            ],
            'data_visibility_scope': ['pharmacy_inventory', 'prescription_records', 'supplier_info'],
            'user_management_capabilities': ['manage_pharmacy_staff', 'assign_pharmacy_roles'],
            'system_configuration_access': ['pharmacy_settings', 'inventory_thresholds', 'supplier_configs'],
            'reporting_permissions': ['inventory_reports', 'expiry_tracking', 'procurement_analytics'],
            'role_specific_limitations': ['limited_patient_medical_history', 'no_financial_settings'],
        },
        'laboratory-admin': {
            'name': 'Laboratory Admin',
            'description': 'Specialized administrator for laboratory operations',
            'priority': 60,
            'module_access': [
                'laboratory', 'lab_tests', 'test_requests', 'test_results',
                'equipment', 'quality_control',
            ],
            'data_visibility_scope': ['laboratory_tests', 'patient_diagnostics', 'equipment_records'],
            'user_management_capabilities': ['manage_laboratory_staff', 'assign_laboratory_roles'],
            'system_configuration_access': ['laboratory_settings', 'test_parameters', 'instrument_configs'],
            'reporting_permissions': ['test_volume_reports', 'turnaround_analytics', 'qc_reports'],
            'role_specific_limitations': ['limited_patient_medical_history', 'no_test_pricing_changes'],
        },
        'reception': {
            'name': 'Reception',
            'description': 'Front-desk personnel for patient interaction',
            'priority': 60,
            'module_access': ['patient_registration', 'appointments', 'basic_patient_info', 'communications'],
            'data_visibility_scope': ['patient_demographics', 'appointment_schedules', 'basic_billing_info'],
            'user_management_capabilities': [],
            'system_configuration_access': ['appointment_preferences', 'communication_templates'],
            'reporting_permissions': ['daily_schedules', 'patient_flow_reports', 'reception_metrics'],
            'role_specific_limitations': ['no_medical_records', 'no_financial_transactions', 'no_patient_deletion'],
        },
    }

    # subordinate -> supervisor
    HIERARCHY = {
        'sub-super-admin': 'super-admin',
        'pharmacy-admin': 'sub-super-admin',
        'laboratory-admin': 'sub-super-admin',
        'reception': 'sub-super-admin',
    }

    ROLE_PERMISSIONS = {
        'super-admin': 'ALL',
        'sub-super-admin': [
            'view-users', 'create-users', 'edit-users',
            'view-roles', 'edit-roles',
            'view-patients', 'create-patients', 'edit-patients',
            'view-pharmacy', 'manage-medicines', 'process-prescriptions',
            'view-laboratory', 'manage-lab-tests', 'process-test-results',
            'view-rbac-dashboard', 'view-permission-matrix', 'view-activity-logs',
        ],
        'pharmacy-admin': [
            'view-pharmacy', 'manage-medicines', 'process-prescriptions',
            'view-patients',
        ],
        'laboratory-admin': [
            'view-laboratory', 'manage-lab-tests', 'process-test-results',
            'view-patients',
        ],
        'reception': [
            'view-patients', 'create-patients', 'edit-patients',
            'view-users',
        ],
    }

    def add_arguments(self, parser):
        parser.add_argument(
            '--skip-roles',
            action='store_true',
            help='Only seed the permission catalog and its dependencies'
        )

    def handle(self, *args, **options):
        self.stdout.write('Seeding hospital RBAC...\n')

        try:
            with transaction.atomic():
                permissions = self.seed_permissions()
                self.seed_dependencies(permissions)
                if not options['skip_roles']:
                    roles = self.seed_roles()
                    self.seed_hierarchy(roles)
                    self.seed_role_permissions(roles, permissions)
        except HierarchyIntegrityError as e:
            raise CommandError(f"Role hierarchy is invalid: {e.message}")

        self.stdout.write(
            self.style.SUCCESS(
                f'\n✓ Seeding complete: {Permission.objects.count()} permissions, '
                f'{PermissionDependency.objects.count()} dependencies, {Role.objects.count()} roles'
            )
        )

    def seed_permissions(self):
        created_count = 0
        updated_count = 0
        permissions = {}

        for perm_data in self.CANONICAL_PERMISSIONS:
            defaults = {k: v for k, v in perm_data.items() if k != 'name'}
            permission = Permission.objects_with_deleted.filter(name=perm_data['name']).first()

            if permission is None:
                permission = Permission.objects.create(**perm_data)
                created_count += 1
                self.stdout.write(self.style.SUCCESS(f'✓ Created: {permission.name}'))
            else:
                changed = [k for k, v in defaults.items() if getattr(permission, k) != v]
                if changed or permission.deleted_at is not None:
                    for key in changed:
                        setattr(permission, key, defaults[key])
                    permission.deleted_at = None
                    permission.save()
                    updated_count += 1
                    self.stdout.write(self.style.WARNING(f'↻ Updated: {permission.name}'))

            permissions[permission.name] = permission

        self.stdout.write(
            f'Permissions: {created_count} created, {updated_count} updated, '
            f'{len(self.CANONICAL_PERMISSIONS) - created_count - updated_count} unchanged'
        )
        return permissions

    def seed_dependencies(self, permissions):
        graph = DependencyGraph.load()
        created_count = 0

        for name, requires in self.DEPENDENCIES:
            permission = permissions[name]
            depends_on = permissions[requires]
            if depends_on.id in graph.requires(permission.id):
                continue
            if graph.would_create_cycle(permission.id, depends_on.id):
                raise CommandError(f"Dependency {name} -> {requires} would create a cycle")

            PermissionDependency.objects.create(permission=permission, depends_on=depends_on)
            graph.add_edge(permission.id, depends_on.id)
            created_count += 1

        self.stdout.write(f'Dependencies: {created_count} created')

    def seed_roles(self):
        roles = {}
        for slug, role_config in self.DEFAULT_ROLES.items():
            role, created = Role.objects_with_deleted.update_or_create(
                slug=slug,
                defaults={**role_config, 'deleted_at': None}
            )
            roles[slug] = role
            label = '✓ Created' if created else '  Exists'
            self.stdout.write(f'{label}: {role.name} (priority {role.priority})')
        return roles

    def seed_hierarchy(self, roles):
        graph = RoleGraph(list(Role.objects.select_for_update()))

        for slug, parent_slug in self.HIERARCHY.items():
            role, parent = roles[slug], roles[parent_slug]
            if role.parent_role_id == parent.id:
                continue

            reason = graph.inheritance_violation(role, parent)
            if reason:
                raise HierarchyIntegrityError(
                    f"'{slug}' cannot report to '{parent_slug}'", reason=reason
                )
            role.parent_role = parent
            role.save(update_fields=['parent_role', 'updated_at'])
            graph.set_parent(role, parent)

        graph.validate_all()

    def seed_role_permissions(self, roles, permissions):
        for slug, names in self.ROLE_PERMISSIONS.items():
            role = roles[slug]
            wanted = set(permissions) if names == 'ALL' else set(names)

            current = {
                rp.permission.name: rp
                for rp in RolePermission.objects.for_role(role).select_related('permission')
            }
            for name in sorted(wanted - set(current)):
                RolePermission.objects.grant_permission(role=role, permission=permissions[name])
            for name in sorted(set(current) - wanted):
                RolePermission.objects.revoke_permission(role=role, permission=current[name].permission)

            self.stdout.write(f'  {role.name}: {len(wanted)} permissions')
