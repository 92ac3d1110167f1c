"""
Allocation aggregation
Collapses raw allocation rows into per (subproject, request type, date) summaries and prices them
"""
import logging
import time
from collections import OrderedDict
from decimal import Decimal

from django.core.paginator import EmptyPage, Paginator
from django.db import DatabaseError, transaction
from django.db.models import Q, Sum

from billing.conf import import_setting
from billing.models import AllocationSummary
from billing.rates import RateResolver
from billing.vocabulary import Feed, geography_type_for, request_types_for

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


class AllocationAggregator:
    """
    Group resolved allocation rows

    Usage:
        aggregator = AllocationAggregator(feed=upload_run.feed)
        for row, resolution in resolved:
            aggregator.add(row, resolution)
        summaries = aggregator.build_summaries(upload_run)
    """

    def __init__(self, feed=Feed.VERISMA):
        self.feed = Feed(feed)
        self.groups = OrderedDict()
        self.rows_added = 0
        self.min_date = None
        self.max_date = None

    def add(self, row, resolution):
        allocation_date = row['allocation_date']
        request_type = str(row['request_type'])
        key = (resolution.subproject.id, request_type, allocation_date)

        group = self.groups.get(key)
        if group is None:
            # Display names come from the first row seen for the group
            group = {
                'geography': resolution.geography,
                'client': resolution.client,
                'project': resolution.project,
                'subproject': resolution.subproject,
                'geography_type': geography_type_for(row.get('geography')) or
                geography_type_for(resolution.geography.name),
                'request_type': request_type,
                'allocation_date': allocation_date,
                'count': 0,
                'resource_names': [],
            }
            self.groups[key] = group

        group['count'] += 1
        resource_name = row.get('resource_name')
        if resource_name and resource_name not in group['resource_names']:
            group['resource_names'].append(resource_name)

        self.rows_added += 1
        if self.min_date is None or allocation_date < self.min_date:
            self.min_date = allocation_date
        if self.max_date is None or allocation_date > self.max_date:
            self.max_date = allocation_date

    @property
    def months(self):
        return sorted({group['allocation_date'].month for group in self.groups.values()})

    @property
    def years(self):
        return sorted({group['allocation_date'].year for group in self.groups.values()})

    def build_summaries(self, upload_run=None):
        """Unsaved AllocationSummary instances, one per group"""
        summaries = []
        for group in self.groups.values():
            allocation_date = group['allocation_date']
            summaries.append(AllocationSummary(
                geography=group['geography'],
                client=group['client'],
                project=group['project'],
                subproject=group['subproject'],
                upload_run=upload_run,
                feed=self.feed,
                geography_name=group['geography'].name,
                client_name=group['client'].name,
                project_name=group['project'].name,
                subproject_name=group['subproject'].name,
                geography_type=group['geography_type'],
                request_type=group['request_type'],
                allocation_date=allocation_date,
                day=allocation_date.day,
                month=allocation_date.month,
                year=allocation_date.year,
                count=group['count'],
                resource_names=group['resource_names'],
            ))
        return summaries

    def price(self, rate_resolver=None):
        """
        Price every group as count x resolved rate

        Returns:
            dict: {'groups': list of priced group dicts, 'total_count': int, 'total_billing': Decimal}
        """
        rate_resolver = rate_resolver or RateResolver.load({key[0] for key in self.groups})
        priced = []
        total_count = 0
        total_billing = ZERO

        for (subproject_id, request_type, allocation_date), group in self.groups.items():
            rate = rate_resolver.resolve_rate(subproject_id, request_type)
            billing = rate * group['count']
            priced.append({
                'subproject_id': subproject_id,
                'subproject_name': group['subproject'].name,
                'request_type': request_type,
                'allocation_date': allocation_date,
                'count': group['count'],
                'rate': rate,
                'total_billing': billing,
            })
            total_count += group['count']
            total_billing += billing

        return {'groups': priced, 'total_count': total_count, 'total_billing': total_billing}


def replace_summaries(summaries, start_date, end_date, feed=Feed.VERISMA, batch_size=None):
    """
    Delete the feed's existing summaries inside [start_date, end_date] and insert the new ones
    in batches. Other feeds' summaries in the window are left alone.

    A failing batch is retried row by row; rows that still fail are reported, not raised.

    Returns:
        dict: {'deleted': int, 'inserted': int, 'failed_records': list}
    """
    batch_size = batch_size or import_setting('SUMMARY_BATCH_SIZE')
    started = time.monotonic()

    deleted, _ = AllocationSummary.objects.filter(
        feed=feed, allocation_date__gte=start_date, allocation_date__lte=end_date
    ).delete()
    logger.info(f"Deleted {deleted} {feed} summaries between {start_date} and {end_date}")

    inserted = 0
    failed_records = []
    for start in range(0, len(summaries), batch_size):
        batch = summaries[start:start + batch_size]
        try:
            with transaction.atomic():
                AllocationSummary.objects.bulk_create(batch)
            inserted += len(batch)
        except DatabaseError as e:
            logger.warning(f"Summary batch {start // batch_size + 1} failed ({e}); retrying row by row")
            for summary in batch:
                summary.pk = None
                try:
                    with transaction.atomic():
                        summary.save(force_insert=True)
                    inserted += 1
                except DatabaseError as row_error:
                    logger.warning(
                        f"Summary {summary.subproject_name}/{summary.request_type}/"
                        f"{summary.allocation_date} failed: {row_error}"
                    )
                    failed_records.append({
                        'subproject_name': summary.subproject_name,
                        'request_type': summary.request_type,
                        'allocation_date': summary.allocation_date.isoformat(),
                        'error': str(row_error),
                    })
        logger.info(f"  Inserted {inserted}/{len(summaries)} summaries")

    logger.info(f"Summary write finished in {time.monotonic() - started:.2f}s")
    return {'deleted': deleted, 'inserted': inserted, 'failed_records': failed_records}


def delete_allocations(year=None, month=None, feed=Feed.VERISMA):
    """Delete one feed's summaries for a year and/or month; returns the number deleted"""
    if year is None and month is None:
        raise ValueError('year or month is required')
    queryset = AllocationSummary.objects.filter(feed=feed)
    if year is not None:
        queryset = queryset.filter(year=year)
    if month is not None:
        queryset = queryset.filter(month=month)
    deleted, _ = queryset.delete()
    logger.info(f"Deleted {deleted} {feed} allocation summaries (year={year}, month={month})")
    return deleted


class AllocationSummaryQuery:
    """
    Per-subproject allocation report with billing

    Filters: year, month ('all' = every month), start_date, end_date, geography_id,
    geography_type, client_id, project_id, subproject_id, search (subproject or project name)
    """

    def __init__(self, filters=None, feed=Feed.VERISMA):
        self.filters = filters or {}
        self.feed = Feed(feed)

    def queryset(self):
        filters = self.filters
        queryset = AllocationSummary.objects.filter(feed=self.feed)

        if filters.get('year') is not None:
            queryset = queryset.filter(year=filters['year'])
        if filters.get('month') is not None:
            queryset = queryset.filter(month=filters['month'])
        if filters.get('start_date'):
            queryset = queryset.filter(allocation_date__gte=filters['start_date'])
        if filters.get('end_date'):
            queryset = queryset.filter(allocation_date__lte=filters['end_date'])
        for field in ('geography_id', 'client_id', 'project_id', 'subproject_id', 'geography_type'):
            if filters.get(field):
                queryset = queryset.filter(**{field: filters[field]})
        if filters.get('search'):
            search = filters['search']
            queryset = queryset.filter(Q(subproject_name__icontains=search) | Q(project_name__icontains=search))
        return queryset

    def request_type_columns(self, seen):
        columns = [request_type.value for request_type in request_types_for(self.feed)]
        columns.extend(sorted(name for name in seen if name not in columns))
        return columns

    def rows(self):
        """Every matching subproject row, sorted by location name"""
        grouped = (
            self.queryset()
            .values(
                'subproject_id', 'project_id', 'client_id', 'geography_id',
                'subproject_name', 'project_name', 'client_name', 'geography_name', 'geography_type',
                'request_type',
            )
            .annotate(total=Sum('count'))
            .order_by('subproject_name', 'subproject_id')
        )

        by_subproject = OrderedDict()
        seen_types = set()
        for item in grouped:
            row = by_subproject.get(item['subproject_id'])
            if row is None:
                row = {
                    'subproject_id': item['subproject_id'],
                    'project_id': item['project_id'],
                    'client_id': item['client_id'],
                    'geography_id': item['geography_id'],
                    'location': item['subproject_name'],
                    'process_type': item['project_name'],
                    'client_name': item['client_name'],
                    'geography_name': item['geography_name'],
                    'geography_type': item['geography_type'],
                    'counts': {},
                }
                by_subproject[item['subproject_id']] = row
            counts = row['counts']
            counts[item['request_type']] = counts.get(item['request_type'], 0) + (item['total'] or 0)
            seen_types.add(item['request_type'])

        columns = self.request_type_columns(seen_types)
        rate_resolver = RateResolver.load(list(by_subproject))
        rows = []
        for subproject_id, row in by_subproject.items():
            counts = row.pop('counts')
            request_types = OrderedDict()
            total_count = 0
            total_billing = ZERO
            for name in columns:
                count = counts.get(name, 0)
                rate = rate_resolver.resolve_rate(subproject_id, name)
                billing = rate * count
                request_types[name] = {'count': count, 'rate': rate, 'billing': billing}
                total_count += count
                total_billing += billing
            row['request_types'] = request_types
            row['total_count'] = total_count
            row['total_billing'] = total_billing
            rows.append(row)

        return rows, columns

    @staticmethod
    def totals(rows, columns):
        totals = {
            'request_types': OrderedDict((name, {'count': 0, 'billing': ZERO}) for name in columns),
            'total_count': 0,
            'total_billing': ZERO,
        }
        for row in rows:
            for name, values in row['request_types'].items():
                totals['request_types'][name]['count'] += values['count']
                totals['request_types'][name]['billing'] += values['billing']
            totals['total_count'] += row['total_count']
            totals['total_billing'] += row['total_billing']
        return totals

    def page(self, page=1, limit=None):
        """
        One page of rows with page totals and grand totals over every page

        Returns:
            dict with data, totals, grand_totals, pagination
        """
        limit = min(int(limit or import_setting('DEFAULT_PAGE_SIZE')), import_setting('MAX_PAGE_SIZE'))
        limit = max(limit, 1)
        page = max(int(page or 1), 1)

        rows, columns = self.rows()
        paginator = Paginator(rows, limit)
        try:
            page_rows = list(paginator.page(page).object_list)
        except EmptyPage:
            page_rows = []

        total_pages = paginator.num_pages if rows else 0
        return {
            'request_types': columns,
            'data': page_rows,
            'totals': self.totals(page_rows, columns),
            'grand_totals': self.totals(rows, columns),
            'pagination': {
                'current_page': page,
                'total_pages': total_pages,
                'total_items': len(rows),
                'items_per_page': limit,
                'has_next': page < total_pages,
                'has_prev': page > 1,
            },
        }

    def export(self):
        """All rows without pagination"""
        rows, columns = self.rows()
        return {
            'request_types': columns,
            'data': rows,
            'grand_totals': self.totals(rows, columns),
        }
