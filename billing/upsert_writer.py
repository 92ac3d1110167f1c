"""
Hierarchy writers for bulk uploads with generation versioning
Full replace builds a staging generation and swaps it in; incremental upserts into the active one
"""
import logging
import time
from collections import OrderedDict
from decimal import Decimal

from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.conf import import_setting
from billing.hierarchy_cache import HierarchyCache, compact_key
from billing.models import (
    Client, Geography, HierarchyGeneration, Project, Subproject, SubprojectRequestType, UploadRun,
)
from billing.parsers import ROW_KEY
from billing.vocabulary import Feed, request_types_for

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


class Node:
    """One hierarchy entity grouped from file rows"""

    def __init__(self, name):
        self.name = name
        self.children = OrderedDict()
        self.rows = []
        self.flatrate = ZERO
        self.rates = {}

    def child(self, name):
        key = compact_key(name)
        if key not in self.children:
            self.children[key] = Node(name)
        return self.children[key]

    @property
    def first_row(self):
        return self.rows[0] if self.rows else None


def build_tree(rows):
    """
    Group validated hierarchy rows into geography -> client -> project -> subproject

    The first spelling seen for a compact_key is kept. A subproject's flatrate is the highest
    seen for it; its rates are keyed by request type.
    """
    root = Node('')
    for row in rows:
        geography = root.child(row['geography'])
        client = geography.child(row['client_name'])
        project = client.child(row['project_name'])
        subproject = project.child(row['subproject_name'])

        for node in (geography, client, project, subproject):
            node.rows.append(row.get(ROW_KEY))

        subproject.rates[str(row['request_type'])] = row.get('rate') or ZERO
        flatrate = row.get('flatrate') or ZERO
        if flatrate > subproject.flatrate:
            subproject.flatrate = flatrate
    return root


def walk(root):
    """Yield (geography, client, project, subproject) node paths"""
    for geography in root.children.values():
        for client in geography.children.values():
            for project in client.children.values():
                for subproject in project.children.values():
                    yield geography, client, project, subproject


def seeded_rates(node, feed):
    """Rate per request type of the feed, 0 where the file gave none"""
    return OrderedDict(
        (request_type.value, node.rates.get(request_type.value, ZERO))
        for request_type in request_types_for(feed)
    )


class BaseWriter:
    def __init__(self, feed=Feed.VERISMA, upload_run=None, batch_size=None):
        self.feed = Feed(feed)
        self.upload_run = upload_run
        self.batch_size = batch_size or import_setting('HIERARCHY_BATCH_SIZE')
        self.failed_records = []
        self.counts = {
            'geographies': 0,
            'clients': 0,
            'projects': 0,
            'subprojects': 0,
            'request_types': 0,
        }

    def _fail(self, node, entity, error):
        logger.warning(f"Row {node.first_row}: failed to write {entity} \"{node.name}\": {error}")
        self.failed_records.append({
            ROW_KEY: node.first_row,
            'entity': entity,
            'name': node.name,
            'error': str(error),
        })

    def _skip_children(self, node, entity):
        for child in node.children.values():
            self._fail(child, entity, f'parent "{node.name}" was not written')


class FullReplaceWriter(BaseWriter):
    """
    Build a complete new hierarchy generation with batch inserts, then swap it in

    Parent ids flow to the next level through temp-key maps (name key path -> saved
    entity). The previously active generation stays readable until the swap transaction
    commits, after which its rows (and everything hanging off them) are deleted.
    """

    def write(self, rows):
        started = time.monotonic()
        tree = build_tree(rows)
        self.discard_orphaned_generations()

        generation = HierarchyGeneration.objects.create(
            version=HierarchyGeneration.next_version(),
            status='staging',
            upload_run=self.upload_run,
        )
        logger.info(f"Building staging hierarchy v{generation.version}")

        try:
            self._build(generation, tree)
            retired = self.swap(generation)
        except Exception:
            logger.exception(f"Full replace failed; discarding staging hierarchy v{generation.version}")
            self._discard(generation)
            raise

        removed = self.purge(retired)
        elapsed = time.monotonic() - started
        logger.info(f"Hierarchy v{generation.version} active: {self.counts} in {elapsed:.2f}s")

        return {
            'mode': 'replace',
            'generation': generation.version,
            'retired_generations': [g.version for g in retired],
            'removed': removed,
            **self.counts,
            'failed_records': self.failed_records,
        }

    def _build(self, generation, tree):
        # Geographies
        pending = [
            (geo_key, Geography(generation=generation, name=node.name), node)
            for geo_key, node in tree.children.items()
        ]
        geographies = self._insert_in_batches('geography', pending)
        self.counts['geographies'] = len(geographies)

        # Clients
        pending = []
        for geo_key, geo_node in tree.children.items():
            geography = geographies.get(geo_key)
            if geography is None:
                self._skip_children(geo_node, 'client')
                continue
            for client_key, node in geo_node.children.items():
                pending.append((
                    (geo_key, client_key),
                    Client(geography=geography, name=node.name, geography_name=geography.name),
                    node,
                ))
        clients = self._insert_in_batches('client', pending)
        self.counts['clients'] = len(clients)

        # Projects
        pending = []
        for geo_key, geo_node in tree.children.items():
            for client_key, client_node in geo_node.children.items():
                client = clients.get((geo_key, client_key))
                if client is None:
                    if geo_key in geographies:
                        self._skip_children(client_node, 'project')
                    continue
                for project_key, node in client_node.children.items():
                    pending.append((
                        (geo_key, client_key, project_key),
                        Project(
                            client=client,
                            geography_id=client.geography_id,
                            name=node.name,
                            client_name=client.name,
                            geography_name=client.geography_name,
                        ),
                        node,
                    ))
        projects = self._insert_in_batches('project', pending)
        self.counts['projects'] = len(projects)

        # Subprojects
        pending = []
        rate_nodes = {}
        for geo_key, geo_node in tree.children.items():
            for client_key, client_node in geo_node.children.items():
                for project_key, project_node in client_node.children.items():
                    project = projects.get((geo_key, client_key, project_key))
                    if project is None:
                        if (geo_key, client_key) in clients:
                            self._skip_children(project_node, 'subproject')
                        continue
                    for sub_key, node in project_node.children.items():
                        temp_key = (geo_key, client_key, project_key, sub_key)
                        rate_nodes[temp_key] = node
                        pending.append((
                            temp_key,
                            Subproject(
                                project=project,
                                client_id=project.client_id,
                                geography_id=project.geography_id,
                                name=node.name,
                                project_name=project.name,
                                client_name=project.client_name,
                                geography_name=project.geography_name,
                                flatrate=node.flatrate,
                            ),
                            node,
                        ))
        subprojects = self._insert_in_batches('subproject', pending)
        self.counts['subprojects'] = len(subprojects)

        # Request type rates, one per request type of the feed
        pending = []
        for temp_key, subproject in subprojects.items():
            node = rate_nodes[temp_key]
            for name, rate in seeded_rates(node, self.feed).items():
                pending.append((
                    temp_key + (name,),
                    SubprojectRequestType(subproject=subproject, name=name, rate=rate),
                    node,
                ))
        request_types = self._insert_in_batches('request type', pending)
        self.counts['request_types'] = len(request_types)

    def _insert_in_batches(self, label, pending):
        """
        Insert (temp_key, instance, node) items in batches

        A failing batch is retried row by row so one bad record does not sink the rest.

        Returns:
            dict of temp_key -> saved instance
        """
        written = {}
        total = len(pending)

        for start in range(0, total, self.batch_size):
            batch = pending[start:start + self.batch_size]
            model = type(batch[0][1])
            try:
                with transaction.atomic():
                    created = model.objects.bulk_create([instance for _, instance, _ in batch])
                for (temp_key, _, _), instance in zip(batch, created):
                    written[temp_key] = instance
            except DatabaseError as e:
                logger.warning(f"{label} batch {start // self.batch_size + 1} failed ({e}); retrying row by row")
                for temp_key, instance, node in batch:
                    instance.pk = None
                    try:
                        with transaction.atomic():
                            instance.save(force_insert=True)
                        written[temp_key] = instance
                    except DatabaseError as row_error:
                        self._fail(node, label, row_error)

            logger.info(
                f"  Batch {start // self.batch_size + 1}: {len(written)}/{total} {label} rows written"
            )
        return written

    def swap(self, generation):
        """Retire the active generation(s) and activate `generation` in one transaction"""
        with transaction.atomic():
            previous = list(
                HierarchyGeneration.objects.select_for_update().filter(is_active=True).exclude(pk=generation.pk)
            )
            for old in previous:
                old.is_active = False
                old.status = 'retired'
                old.replaced_by = generation
                old.save(update_fields=['is_active', 'status', 'replaced_by'])

            generation.is_active = True
            generation.status = 'active'
            generation.activated_at = timezone.now()
            generation.save(update_fields=['is_active', 'status', 'activated_at'])

        if previous:
            logger.info(
                f"Swapped hierarchy v{', v'.join(str(g.version) for g in previous)} -> v{generation.version}"
            )
        return previous

    def purge(self, generations):
        """Delete the entities of retired generations; cascades to everything under them"""
        removed = {}
        for generation in generations:
            deleted, per_model = Geography.objects.filter(generation=generation).delete()
            for model_label, count in per_model.items():
                removed[model_label] = removed.get(model_label, 0) + count
            logger.info(f"Deleted {deleted} rows of retired hierarchy v{generation.version}")
        return removed

    def discard_orphaned_generations(self):
        """Mark staging generations left behind by finished or crashed runs as discarded"""
        orphans = HierarchyGeneration.objects.filter(status='staging').exclude(
            upload_run__status__in=[
                status for status, _ in UploadRun.STATUS_CHOICES if status not in UploadRun.TERMINAL
            ]
        )
        for generation in orphans:
            logger.warning(f"Discarding orphaned staging hierarchy v{generation.version}")
            self._discard(generation)

    def _discard(self, generation):
        Geography.objects.filter(generation=generation).delete()
        generation.status = 'discarded'
        generation.is_active = False
        generation.save(update_fields=['status', 'is_active'])


class IncrementalWriter(BaseWriter):
    """
    Find-or-create each hierarchy level by (parent, compact_key(name)) in the active generation

    Matches keep their status and timestamps; only denormalized names, subproject flat rate
    and request type rates are refreshed. Safe to re-run with the same file.
    """

    def write(self, rows):
        started = time.monotonic()
        tree = build_tree(rows)
        generation = HierarchyGeneration.ensure_active()
        cache = HierarchyCache.build(generation, active_only=False)
        self.created = {key: 0 for key in self.counts}

        for geo_node in tree.children.values():
            geography = self._upsert(
                'geography', geo_node,
                find=lambda node=geo_node: cache.find_geography(node.name),
                create=lambda node=geo_node: Geography.objects.create(generation=generation, name=node.name),
                refresh={},
            )
            if geography is None:
                self._skip_children(geo_node, 'client')
                continue
            cache.add_geography(geography)

            for client_node in geo_node.children.values():
                client = self._write_client(cache, geography, client_node)
                if client is None:
                    self._skip_children(client_node, 'project')
                    continue

                for project_node in client_node.children.values():
                    project = self._write_project(cache, client, project_node)
                    if project is None:
                        self._skip_children(project_node, 'subproject')
                        continue

                    for sub_node in project_node.children.values():
                        subproject = self._write_subproject(cache, project, sub_node)
                        if subproject is not None:
                            self._write_rates(subproject, sub_node)

            logger.info(f"  Geography {geography.name}: {self.counts}")

        elapsed = time.monotonic() - started
        logger.info(f"Incremental hierarchy upload into v{generation.version}: {self.counts} in {elapsed:.2f}s")
        return {
            'mode': 'incremental',
            'generation': generation.version,
            **self.counts,
            'created': self.created,
            'failed_records': self.failed_records,
        }

    def _upsert(self, label, node, find, create, refresh):
        """
        Match or create one entity inside a savepoint

        Args:
            find: returns the cached entity or None
            create: creates and returns a new entity
            refresh: denormalized field -> value to set on a matched entity
        """
        counter = {'geography': 'geographies', 'client': 'clients', 'project': 'projects',
                   'subproject': 'subprojects'}[label]
        try:
            with transaction.atomic():
                entity = find()
                if entity is None:
                    entity = create()
                    self.created[counter] += 1
                else:
                    changed = [field for field, value in refresh.items() if getattr(entity, field) != value]
                    for field in changed:
                        setattr(entity, field, refresh[field])
                    if changed:
                        entity.save(update_fields=changed + ['updated_at'])
        except DatabaseError as e:
            self._fail(node, label, e)
            return None

        self.counts[counter] += 1
        return entity

    def _write_client(self, cache, geography, node):
        client = self._upsert(
            'client', node,
            find=lambda: cache.find_client(geography, node.name),
            create=lambda: Client.objects.create(
                geography=geography, name=node.name, geography_name=geography.name
            ),
            refresh={'geography_name': geography.name},
        )
        if client is not None:
            cache.add_client(client)
        return client

    def _write_project(self, cache, client, node):
        project = self._upsert(
            'project', node,
            find=lambda: cache.find_project(client, node.name),
            create=lambda: Project.objects.create(
                client=client,
                geography_id=client.geography_id,
                name=node.name,
                client_name=client.name,
                geography_name=client.geography_name,
            ),
            refresh={'client_name': client.name, 'geography_name': client.geography_name},
        )
        if project is not None:
            cache.add_project(project)
        return project

    def _write_subproject(self, cache, project, node):
        subproject = self._upsert(
            'subproject', node,
            find=lambda: cache.find_subproject(project, node.name),
            create=lambda: Subproject.objects.create(
                project=project,
                client_id=project.client_id,
                geography_id=project.geography_id,
                name=node.name,
                project_name=project.name,
                client_name=project.client_name,
                geography_name=project.geography_name,
                flatrate=node.flatrate,
            ),
            refresh={
                'project_name': project.name,
                'client_name': project.client_name,
                'geography_name': project.geography_name,
                'flatrate': node.flatrate,
            },
        )
        if subproject is not None:
            cache.add_subproject(subproject)
        return subproject

    def _write_rates(self, subproject, node):
        for name, rate in seeded_rates(node, self.feed).items():
            try:
                with transaction.atomic():
                    _, created = SubprojectRequestType.objects.update_or_create(
                        subproject=subproject, name=name, defaults={'rate': rate}
                    )
                self.counts['request_types'] += 1
                if created:
                    self.created['request_types'] += 1
            except DatabaseError as e:
                self._fail(node, f'{name} rate', e)


class HierarchyPlanner:
    """
    Describe what an upload would do to the active hierarchy without writing anything

    Actions: create_geography, create_client, create_project, create_subproject,
    skip_existing_subproject, update_rates
    """

    def __init__(self, cache, feed=Feed.VERISMA):
        self.cache = cache
        self.feed = Feed(feed)

    def plan(self, rows):
        tree = build_tree(rows)
        actions = []

        for geo_node in tree.children.values():
            geography = self.cache.find_geography(geo_node.name)
            if geography is None:
                actions.append(self._action('create_geography', geo_node, geography=geo_node.name))

            for client_node in geo_node.children.values():
                client = self.cache.find_client(geography, client_node.name) if geography else None
                if client is None:
                    actions.append(self._action(
                        'create_client', client_node, geography=geo_node.name, client_name=client_node.name
                    ))

                for project_node in client_node.children.values():
                    project = self.cache.find_project(client, project_node.name) if client else None
                    if project is None:
                        actions.append(self._action(
                            'create_project', project_node,
                            client_name=client_node.name, project_name=project_node.name,
                        ))

                    for sub_node in project_node.children.values():
                        subproject = self.cache.find_subproject(project, sub_node.name) if project else None
                        action_type = 'skip_existing_subproject' if subproject else 'create_subproject'
                        actions.append(self._action(
                            action_type, sub_node,
                            project_name=project_node.name, subproject_name=sub_node.name,
                        ))
                        actions.append(self._action(
                            'update_rates', sub_node,
                            subproject_name=sub_node.name,
                            flatrate=str(sub_node.flatrate),
                            rates={name: str(rate) for name, rate in seeded_rates(sub_node, self.feed).items()},
                        ))

        summary = {
            'total_rows': len(rows),
            'planned_creates': sum(1 for a in actions if a['type'].startswith('create')),
            'planned_skips': sum(1 for a in actions if a['type'].startswith('skip')),
            'planned_rate_updates': sum(1 for a in actions if a['type'] == 'update_rates'),
        }
        return {'summary': summary, 'plan': actions}

    @staticmethod
    def _action(action_type, node, **details):
        return {'type': action_type, 'rows': list(node.rows), **details}
