from django.db.models.signals import post_save, pre_delete, pre_save
from django.dispatch import receiver

from .exceptions import Forbidden
from .models import Invoice, Project, User


@receiver(post_save, sender=Invoice)
def refresh_invoice_status_on_save(sender, instance: Invoice, **kwargs):
    """Keep invoice status in sync when invoices are edited outside the ledger (e.g. admin)."""
    if kwargs.get('raw'):
        return
    update_fields = kwargs.get('update_fields')
    if update_fields and 'status' in update_fields:
        # status was written explicitly by the ledger or refresh_status itself
        return
    instance.refresh_status()


@receiver(pre_delete, sender=Project)
def block_project_delete(sender, instance: Project, **kwargs):
    raise Forbidden('Projects cannot be deleted.')


@receiver(pre_save, sender=User)
def superusers_are_admins(sender, instance: User, **kwargs):
    if instance.is_superuser and instance.role != User.Roles.ADMIN:
        instance.role = User.Roles.ADMIN
