"""
Billing rate lookup by request type or productivity tier
"""
import logging
from decimal import Decimal

from django.db.models import Q

from billing.vocabulary import ProductivityLevel, RequestType, match

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


class RateResolver:
    """
    Rate tables for a set of subprojects, loaded once

    resolve_rate(subproject_id, selector):
        selector is a request type -> that subproject's request-type rate
        selector is a productivity level -> subproject tier, then project tier
        anything missing -> Decimal('0')
    """

    def __init__(self, request_type_rates=None, subproject_tiers=None, project_tiers=None, subproject_projects=None):
        self.request_type_rates = request_type_rates or {}
        self.subproject_tiers = subproject_tiers or {}
        self.project_tiers = project_tiers or {}
        self.subproject_projects = subproject_projects or {}

    @classmethod
    def load(cls, subproject_ids=None):
        """Load rates for the given subprojects (all subprojects when None)"""
        from billing.models import Subproject, SubprojectProductivity, SubprojectRequestType

        request_types = SubprojectRequestType.objects.all()
        subprojects = Subproject.objects.all()
        if subproject_ids is not None:
            subproject_ids = list(subproject_ids)
            request_types = request_types.filter(subproject_id__in=subproject_ids)
            subprojects = subprojects.filter(id__in=subproject_ids)

        subproject_projects = dict(subprojects.values_list('id', 'project_id'))
        request_type_rates = {
            (subproject_id, name): rate
            for subproject_id, name, rate in request_types.values_list('subproject_id', 'name', 'rate')
        }

        subproject_tiers = {}
        project_tiers = {}
        tiers = SubprojectProductivity.objects.filter(
            Q(subproject_id__in=list(subproject_projects)) | Q(project_id__in=set(subproject_projects.values()))
        )
        for subproject_id, project_id, level, base_rate in tiers.values_list(
            'subproject_id', 'project_id', 'level', 'base_rate'
        ):
            if subproject_id is not None:
                subproject_tiers[(subproject_id, level.lower())] = base_rate
            else:
                project_tiers[(project_id, level.lower())] = base_rate

        return cls(request_type_rates, subproject_tiers, project_tiers, subproject_projects)

    def resolve_rate(self, subproject_id, selector):
        request_type = match(selector, RequestType)
        if request_type is not None:
            return self._as_decimal(self.request_type_rates.get((subproject_id, request_type.value)))

        level = match(selector, ProductivityLevel)
        if level is not None:
            rate = self.subproject_tiers.get((subproject_id, level.value))
            if rate is None:
                project_id = self.subproject_projects.get(subproject_id)
                rate = self.project_tiers.get((project_id, level.value))
            return self._as_decimal(rate)

        logger.debug(f"No pricing axis matches selector {selector!r}; rate is 0")
        return ZERO

    @staticmethod
    def _as_decimal(value):
        if value is None:
            return ZERO
        return Decimal(str(value))


def resolve_rate(subproject_id, selector):
    """One-off lookup for a single subproject"""
    if subproject_id is None:
        return ZERO
    return RateResolver.load([subproject_id]).resolve_rate(subproject_id, selector)
