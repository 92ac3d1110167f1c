"""
Rename propagation
A rename is saved once and announced with `hierarchy_renamed`; the receiver below updates every
denormalized copy of the name
"""
import logging

import django.dispatch
from django.db import transaction
from django.dispatch import receiver

from billing.models import AllocationSummary, Billing, Client, Geography, Project, Subproject

logger = logging.getLogger(__name__)

# sender = model class; kwargs: instance, old_name, new_name
hierarchy_renamed = django.dispatch.Signal()

# model -> (FK field on dependent rows, denormalized name field, dependent models)
DENORMALIZED_COPIES = {
    Geography: ('geography', 'geography_name', [Client, Project, Subproject, AllocationSummary, Billing]),
    Client: ('client', 'client_name', [Project, Subproject, AllocationSummary, Billing]),
    Project: ('project', 'project_name', [Subproject, AllocationSummary, Billing]),
    Subproject: ('subproject', 'subproject_name', [AllocationSummary, Billing]),
}


@transaction.atomic
def rename_entity(entity, new_name):
    """
    Rename a Geography, Client, Project or Subproject and fan the new name out

    Returns:
        dict of dependent model name -> rows updated
    """
    if type(entity) not in DENORMALIZED_COPIES:
        raise TypeError(f'{type(entity).__name__} is not a hierarchy entity')

    new_name = str(new_name or '').strip()
    if not new_name:
        raise ValueError('new name is required')

    old_name = entity.name
    if old_name == new_name:
        return {}

    entity.name = new_name
    entity.save(update_fields=['name', 'updated_at'])

    updated = {}
    responses = hierarchy_renamed.send(
        sender=type(entity), instance=entity, old_name=old_name, new_name=new_name
    )
    for _, result in responses:
        if result:
            updated.update(result)
    return updated


@receiver(hierarchy_renamed)
def propagate_name(sender, instance, old_name, new_name, **kwargs):
    fk_field, name_field, dependents = DENORMALIZED_COPIES[sender]

    updated = {}
    for model in dependents:
        updated[model.__name__] = model.objects.filter(**{fk_field: instance}).update(**{name_field: new_name})

    logger.info(f"Renamed {sender.__name__} \"{old_name}\" -> \"{new_name}\": {updated}")
    return updated
