"""
Core models for the HMS authorization engine.
Provides BaseModel with UUID primary keys, soft delete, and timestamp fields,
and AppendOnlyModel for rows that must never change once written.
"""
import uuid
from django.db import models
from django.utils import timezone

from apps.core.exceptions import AuditIntegrityError


class BaseModelManager(models.Manager):
    """Manager that excludes soft-deleted objects by default."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class BaseModelQuerySet(models.QuerySet):
    """QuerySet with soft delete support."""

    def delete(self):
        """Soft delete all objects in queryset."""
        return self.update(deleted_at=timezone.now())

    def hard_delete(self):
        """Permanently delete all objects in queryset."""
        return super().delete()

    def with_deleted(self):
        """Include soft-deleted objects."""
        return self.model.objects_with_deleted.all()


class SoftDeleteManager(BaseModelManager.from_queryset(BaseModelQuerySet)):
    """Base class for app managers on BaseModel subclasses."""


class BaseModel(models.Model):
    """
    Abstract base model with UUID primary key, soft delete, and timestamps.

    Administrator-managed records (roles, permissions, grants) inherit from
    this model. Append-only records such as the audit log do not.
    """
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier"
    )

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when the record was created"
    )

    updated_at = models.DateTimeField(
        auto_now=True,
        db_index=True,
        help_text="Timestamp when the record was last updated"
    )

    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Timestamp when the record was soft deleted"
    )

    # Default manager excludes soft-deleted objects
    objects = SoftDeleteManager()

    # Manager that includes soft-deleted objects
    objects_with_deleted = models.Manager.from_queryset(BaseModelQuerySet)()

    class Meta:
        abstract = True
        ordering = ['-created_at']

    def delete(self, using=None, keep_parents=False):
        """Soft delete the object."""
        self.deleted_at = timezone.now()
        self.save(using=using)

    def hard_delete(self, using=None, keep_parents=False):
        """Permanently delete the object."""
        super().delete(using=using, keep_parents=keep_parents)

    def restore(self):
        """Restore a soft-deleted object."""
        self.deleted_at = None
        self.save()

    @property
    def is_deleted(self):
        """Check if the object is soft deleted."""
        return self.deleted_at is not None


class AppendOnlyQuerySet(models.QuerySet):
    """QuerySet that refuses bulk mutation of existing rows."""

    def update(self, **kwargs):
        raise AuditIntegrityError(
            f"{self.model.__name__} rows are append-only and cannot be updated",
            details={'model': self.model.__name__, 'fields': sorted(kwargs)}
        )

    def delete(self):
        raise AuditIntegrityError(
            f"{self.model.__name__} rows are append-only and cannot be deleted",
            details={'model': self.model.__name__}
        )


class AppendOnlyModel(models.Model):
    """
    Abstract base for rows that are written once and never changed.

    ``save()`` on an existing row and ``delete()`` raise AuditIntegrityError
    unless called with ``allow_mutation=True``. Only the audit component
    passes that flag, and only outside production.
    """
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier"
    )

    objects = models.Manager.from_queryset(AppendOnlyQuerySet)()

    class Meta:
        abstract = True

    def save(self, *args, allow_mutation=False, **kwargs):
        if not self._state.adding and not allow_mutation:
            raise AuditIntegrityError(
                f"{self.__class__.__name__} {self.pk} is append-only and cannot be updated",
                details={'model': self.__class__.__name__, 'id': str(self.pk)}
            )
        super().save(*args, **kwargs)

    def delete(self, using=None, keep_parents=False, allow_mutation=False):
        if not allow_mutation:
            raise AuditIntegrityError(
                f"{self.__class__.__name__} {self.pk} is append-only and cannot be deleted",
                details={'model': self.__class__.__name__, 'id': str(self.pk)}
            )
        return super().delete(using=using, keep_parents=keep_parents)
