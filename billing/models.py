"""
Models for the Allocation Billing System
Geography -> Client -> Project -> Subproject hierarchy, pricing tables, resources,
allocation summaries, billing facts, invoices and upload run tracking
"""
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.db.models import Q
from django.utils import timezone
import uuid
from decimal import Decimal

from billing.exceptions import ImmutableInvoiceError, InvalidStateTransition
from billing.vocabulary import (
    BillableStatus, Feed, GeographyType, ProductivityLevel, RequestType,
)

ZERO = Decimal('0')
CENT = Decimal('0.01')

ENTITY_STATUS_CHOICES = [
    ('active', 'Active'),
    ('inactive', 'Inactive'),
]


class UploadRun(models.Model):
    """Track every bulk upload and the stage it has reached"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4)

    KIND_CHOICES = [
        ('hierarchy', 'Hierarchy and rates'),
        ('allocations', 'Allocation events'),
        ('resources', 'Resources'),
    ]
    kind = models.CharField(max_length=20, choices=KIND_CHOICES)

    MODE_CHOICES = [
        ('replace', 'Full replace'),
        ('incremental', 'Incremental upsert'),
    ]
    mode = models.CharField(max_length=20, choices=MODE_CHOICES, blank=True)
    feed = models.CharField(max_length=20, choices=Feed.choices, default=Feed.VERISMA)
    file_name = models.CharField(max_length=255)
    uploaded_by = models.CharField(max_length=200, blank=True)
    dry_run = models.BooleanField(default=False)

    STATUS_CHOICES = [
        ('received', 'Received'),
        ('parsing', 'Parsing'),
        ('validating', 'Validating'),
        ('resolving', 'Resolving hierarchy'),
        ('writing', 'Writing'),
        ('aggregating', 'Aggregating'),
        ('completed', 'Completed'),
        ('rejected', 'Rejected - see error report'),
        ('failed', 'Failed'),
    ]
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='received')

    rows_read = models.IntegerField(default=0)
    rows_valid = models.IntegerField(default=0)
    rows_written = models.IntegerField(default=0)
    error_message = models.TextField(blank=True)
    summary = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    # Allocation window covered by the file
    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    months = models.JSONField(default=list, blank=True)
    years = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    # Forward order of the pipeline stages; any later stage may be skipped to
    PROGRESSION = ['received', 'parsing', 'validating', 'resolving', 'writing', 'aggregating', 'completed']
    REJECTABLE_FROM = {'validating', 'resolving'}
    TERMINAL = {'completed', 'rejected', 'failed'}

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['kind', 'status']),
        ]

    def __str__(self):
        return f"{self.kind} upload {self.file_name} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL

    def can_transition(self, target):
        if self.status in self.TERMINAL:
            return False
        if target == 'failed':
            return True
        if target == 'rejected':
            return self.status in self.REJECTABLE_FROM
        if target not in self.PROGRESSION:
            return False
        return self.PROGRESSION.index(target) > self.PROGRESSION.index(self.status)

    def transition_to(self, target, **fields):
        """
        Move the run to a new status and persist it together with any counters given

        Raises:
            InvalidStateTransition: when the target is not reachable from the current status
        """
        if not self.can_transition(target):
            raise InvalidStateTransition(self.status, target)

        self.status = target
        for name, value in fields.items():
            setattr(self, name, value)
        if target in self.TERMINAL:
            self.finished_at = timezone.now()
        self.save()
        return self


class HierarchyGeneration(models.Model):
    """
    One complete copy of the Geography/Client/Project/Subproject tree

    Full-replace uploads build a staging generation and swap it in; reads only ever see the
    active generation.
    """
    version = models.IntegerField()
    is_active = models.BooleanField(default=False)

    STATUS_CHOICES = [
        ('staging', 'Staging'),
        ('active', 'Active'),
        ('retired', 'Retired'),
        ('discarded', 'Discarded'),
    ]
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='staging')
    replaced_by = models.ForeignKey('self', null=True, blank=True, on_delete=models.SET_NULL)
    upload_run = models.ForeignKey(
        UploadRun, null=True, blank=True, on_delete=models.SET_NULL, related_name='generations'
    )

    created_at = models.DateTimeField(auto_now_add=True)
    activated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-version']
        indexes = [
            models.Index(fields=['is_active']),
        ]

    def __str__(self):
        return f"Hierarchy v{self.version} ({self.status})"

    @classmethod
    def current(cls):
        return cls.objects.filter(is_active=True).order_by('-version').first()

    @classmethod
    def next_version(cls):
        latest = cls.objects.order_by('-version').values_list('version', flat=True).first()
        return (latest or 0) + 1

    @classmethod
    def ensure_active(cls):
        """Return the active generation, creating version 1 when the tree is empty"""
        generation = cls.current()
        if generation is None:
            generation = cls.objects.create(
                version=cls.next_version(),
                is_active=True,
                status='active',
                activated_at=timezone.now(),
            )
        return generation


class HierarchyQuerySet(models.QuerySet):
    """Queryset with a shortcut to rows that belong to the active generation"""

    def active(self):
        path = self.model.GENERATION_PATH
        return self.filter(**{f'{path}__is_active': True})


class Geography(models.Model):
    """Top of the hierarchy (e.g. US, IND)"""
    generation = models.ForeignKey(HierarchyGeneration, on_delete=models.CASCADE, related_name='geographies')
    name = models.CharField(max_length=200)
    status = models.CharField(max_length=20, choices=ENTITY_STATUS_CHOICES, default='active')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    GENERATION_PATH = 'generation'
    objects = HierarchyQuerySet.as_manager()

    class Meta:
        ordering = ['name']
        unique_together = ['generation', 'name']
        verbose_name_plural = 'Geographies'

    def __str__(self):
        return self.name


class Client(models.Model):
    geography = models.ForeignKey(Geography, on_delete=models.CASCADE, related_name='clients')
    name = models.CharField(max_length=200)
    geography_name = models.CharField(max_length=200, blank=True)
    status = models.CharField(max_length=20, choices=ENTITY_STATUS_CHOICES, default='active')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    GENERATION_PATH = 'geography__generation'
    objects = HierarchyQuerySet.as_manager()

    class Meta:
        ordering = ['name']
        unique_together = ['geography', 'name']

    def __str__(self):
        return f"{self.name} ({self.geography_name})"


class Project(models.Model):
    """A process type under a client"""
    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name='projects')
    geography = models.ForeignKey(Geography, on_delete=models.CASCADE, related_name='projects')
    name = models.CharField(max_length=200)
    client_name = models.CharField(max_length=200, blank=True)
    geography_name = models.CharField(max_length=200, blank=True)
    flatrate = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    status = models.CharField(max_length=20, choices=ENTITY_STATUS_CHOICES, default='active')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    GENERATION_PATH = 'geography__generation'
    objects = HierarchyQuerySet.as_manager()

    class Meta:
        ordering = ['name']
        unique_together = ['client', 'name']

    def __str__(self):
        return f"{self.name} ({self.client_name})"


class Subproject(models.Model):
    """A location: the leaf billing unit"""
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='subprojects')
    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name='subprojects')
    geography = models.ForeignKey(Geography, on_delete=models.CASCADE, related_name='subprojects')
    name = models.CharField(max_length=200)
    project_name = models.CharField(max_length=200, blank=True)
    client_name = models.CharField(max_length=200, blank=True)
    geography_name = models.CharField(max_length=200, blank=True)
    flatrate = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    status = models.CharField(max_length=20, choices=ENTITY_STATUS_CHOICES, default='active')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    GENERATION_PATH = 'geography__generation'
    objects = HierarchyQuerySet.as_manager()

    class Meta:
        ordering = ['name']
        unique_together = ['project', 'name']
        indexes = [
            models.Index(fields=['client', 'geography']),
        ]

    def __str__(self):
        return f"{self.name} ({self.project_name})"


class SubprojectRequestType(models.Model):
    """Price per unit of work for one request type at one subproject"""
    subproject = models.ForeignKey(Subproject, on_delete=models.CASCADE, related_name='request_types')
    name = models.CharField(max_length=50, choices=RequestType.choices)
    rate = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['subproject', 'name']
        unique_together = ['subproject', 'name']

    def __str__(self):
        return f"{self.subproject.name} - {self.name}: {self.rate}"


class SubprojectProductivity(models.Model):
    """Productivity tier rate, attached to a subproject or to a whole project"""
    subproject = models.ForeignKey(
        Subproject, null=True, blank=True, on_delete=models.CASCADE, related_name='productivity_tiers'
    )
    project = models.ForeignKey(
        Project, null=True, blank=True, on_delete=models.CASCADE, related_name='productivity_tiers'
    )
    level = models.CharField(max_length=10, choices=ProductivityLevel.choices)
    base_rate = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = 'Subproject productivity tiers'
        constraints = [
            models.UniqueConstraint(
                fields=['subproject', 'level'],
                condition=Q(subproject__isnull=False),
                name='unique_subproject_productivity_level',
            ),
            models.UniqueConstraint(
                fields=['project', 'level'],
                condition=Q(subproject__isnull=True),
                name='unique_project_productivity_level',
            ),
        ]

    def __str__(self):
        owner = self.subproject or self.project
        return f"{owner} - {self.level}: {self.base_rate}"

    def save(self, *args, **kwargs):
        # Tiers on a subproject also carry its project so project-level lookups see them
        if self.subproject_id and not self.project_id:
            self.project_id = self.subproject.project_id
        super().save(*args, **kwargs)


class Resource(models.Model):
    """A person who logs allocations"""
    name = models.CharField(max_length=200)
    email = models.EmailField(unique=True)
    role = models.CharField(max_length=100, blank=True)
    status = models.CharField(max_length=20, choices=ENTITY_STATUS_CHOICES, default='active')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return f"{self.name} <{self.email}>"


class ResourceAssignment(models.Model):
    """Subproject a resource may log work against"""
    resource = models.ForeignKey(Resource, on_delete=models.CASCADE, related_name='assignments')
    subproject = models.ForeignKey(Subproject, on_delete=models.CASCADE, related_name='assignments')

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ['resource', 'subproject']

    def __str__(self):
        return f"{self.resource.name} -> {self.subproject.name}"

    @property
    def path(self):
        """(geography, client, project, subproject) reachable through this assignment"""
        sub = self.subproject
        return (sub.geography, sub.client, sub.project, sub)


class AllocationSummary(models.Model):
    """Count of allocation events per feed, subproject, request type and day"""
    geography = models.ForeignKey(Geography, on_delete=models.CASCADE, related_name='allocation_summaries')
    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name='allocation_summaries')
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='allocation_summaries')
    subproject = models.ForeignKey(Subproject, on_delete=models.CASCADE, related_name='allocation_summaries')
    upload_run = models.ForeignKey(
        UploadRun, null=True, blank=True, on_delete=models.SET_NULL, related_name='allocation_summaries'
    )

    geography_name = models.CharField(max_length=200)
    client_name = models.CharField(max_length=200)
    project_name = models.CharField(max_length=200)
    subproject_name = models.CharField(max_length=200)
    geography_type = models.CharField(max_length=20, choices=GeographyType.choices, blank=True)

    feed = models.CharField(max_length=20, choices=Feed.choices, default=Feed.VERISMA)
    request_type = models.CharField(max_length=50, choices=RequestType.choices)
    allocation_date = models.DateField(db_index=True)
    day = models.IntegerField()
    month = models.IntegerField()
    year = models.IntegerField()

    count = models.IntegerField(default=0)
    resource_names = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['allocation_date', 'subproject_name', 'request_type']
        unique_together = ['feed', 'subproject', 'request_type', 'allocation_date']
        indexes = [
            models.Index(fields=['feed', 'year', 'month']),
            models.Index(fields=['subproject', 'allocation_date']),
        ]
        verbose_name_plural = 'Allocation summaries'

    def __str__(self):
        return f"{self.subproject_name} {self.request_type} {self.allocation_date}: {self.count}"


class Billing(models.Model):
    """
    Priced billing fact for one resource, subproject, request type and month

    The (resource, subproject, request_type, month, year) key is unique; every write path
    goes through billing_service.upsert_billing.
    """
    resource = models.ForeignKey(Resource, on_delete=models.CASCADE, related_name='billing_records')
    geography = models.ForeignKey(Geography, on_delete=models.CASCADE, related_name='billing_records')
    client = models.ForeignKey(Client, on_delete=models.CASCADE, related_name='billing_records')
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='billing_records')
    subproject = models.ForeignKey(Subproject, on_delete=models.CASCADE, related_name='billing_records')

    geography_name = models.CharField(max_length=200, blank=True)
    client_name = models.CharField(max_length=200, blank=True)
    project_name = models.CharField(max_length=200, blank=True)
    subproject_name = models.CharField(max_length=200, blank=True)

    request_type = models.CharField(max_length=50, choices=RequestType.choices)
    productivity_level = models.CharField(
        max_length=10, choices=ProductivityLevel.choices, default=ProductivityLevel.MEDIUM
    )
    month = models.IntegerField()
    year = models.IntegerField()

    hours = models.DecimalField(max_digits=10, decimal_places=2, default=ZERO)
    rate = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    flatrate = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    costing = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    total_amount = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    billable_status = models.CharField(
        max_length=20, choices=BillableStatus.choices, default=BillableStatus.BILLABLE
    )
    description = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-year', '-month', 'subproject_name']
        unique_together = ['resource', 'subproject', 'request_type', 'month', 'year']
        indexes = [
            models.Index(fields=['year', 'month']),
            models.Index(fields=['project', 'year', 'month']),
        ]

    def __str__(self):
        return f"{self.resource.name} {self.subproject_name} {self.request_type} {self.month}/{self.year}"

    def save(self, *args, **kwargs):
        # Derived amounts are always recomputed from hours
        hours = Decimal(str(self.hours))
        self.costing = (hours * Decimal(str(self.rate))).quantize(CENT)
        self.total_amount = (hours * Decimal(str(self.flatrate))).quantize(CENT)
        super().save(*args, **kwargs)


class Invoice(models.Model):
    """Immutable snapshot of the billing records of one period"""
    invoice_number = models.CharField(max_length=40, unique=True)
    month = models.IntegerField()
    year = models.IntegerField()

    records = models.JSONField(default=list)
    record_count = models.IntegerField(default=0)
    billable_hours = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    non_billable_hours = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    billable_amount = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)
    non_billable_amount = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)
    total_billing = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)
    total_costing = models.DecimalField(max_digits=16, decimal_places=2, default=ZERO)

    generated_by = models.CharField(max_length=200, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['year', 'month']),
        ]

    def __str__(self):
        return f"{self.invoice_number} ({self.month}/{self.year})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableInvoiceError(f'Invoice {self.invoice_number} has already been issued')
        super().save(*args, **kwargs)
