"""
Request-scoped lookup maps over the active Geography/Client/Project/Subproject tree
Built once per upload so row resolution never queries the database
"""
import logging
import re
import time
from collections import defaultdict

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r'[\s_-]+')


def normalize_name(name):
    """Lower-case and collapse whitespace, underscores and hyphens to single spaces"""
    return _SEPARATORS.sub(' ', str(name or '').lower()).strip()


def compact_key(name):
    """
    Matching key for hierarchy names: normalized with every separator removed

    "Site A", "site_a" and "SiteA" share a key. The cache, the file tree built by the writers
    and the in-file duplicate check all compare names through this key.
    """
    return normalize_name(name).replace(' ', '')


class NameIndex:
    """Entities keyed by compact_key; the first entity registered for a key wins"""

    def __init__(self):
        self._by_key = {}
        self._items = []

    def add(self, entity):
        self._by_key.setdefault(compact_key(entity.name), entity)
        self._items.append(entity)

    def get(self, name):
        if not name:
            return None
        return self._by_key.get(compact_key(name))

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)


class HierarchyCache:
    """
    In-memory view of one hierarchy generation

    Structures:
        geographies: NameIndex of Geography
        clients_by_geography: geography id -> NameIndex of Client
        projects_by_client: client id -> NameIndex of Project
        subprojects_by_project: project id -> NameIndex of Subproject
    """

    def __init__(self, geographies=(), clients=(), projects=(), subprojects=()):
        self.geographies = NameIndex()
        self.clients_by_geography = defaultdict(NameIndex)
        self.projects_by_client = defaultdict(NameIndex)
        self.subprojects_by_project = defaultdict(NameIndex)
        self.projects_by_name = defaultdict(list)

        for geography in geographies:
            self.add_geography(geography)
        for client in clients:
            self.add_client(client)
        for project in projects:
            self.add_project(project)
        for subproject in subprojects:
            self.add_subproject(subproject)

    @classmethod
    def build(cls, generation=None, active_only=True):
        """
        Load the tree once

        Args:
            generation: HierarchyGeneration to load; defaults to the active one
            active_only: skip entities whose status is not 'active'
        """
        from billing.models import Client, Geography, HierarchyGeneration, Project, Subproject

        started = time.monotonic()
        generation = generation or HierarchyGeneration.current()
        if generation is None:
            logger.info('No active hierarchy generation; cache is empty')
            return cls()

        status_filter = {'status': 'active'} if active_only else {}
        cache = cls(
            geographies=Geography.objects.filter(generation=generation, **status_filter),
            clients=Client.objects.filter(geography__generation=generation, **status_filter),
            projects=Project.objects.filter(geography__generation=generation, **status_filter),
            subprojects=Subproject.objects.filter(geography__generation=generation, **status_filter),
        )
        logger.info(
            f"Loaded hierarchy v{generation.version}: {cache.counts()} "
            f"in {time.monotonic() - started:.2f}s"
        )
        return cache

    def counts(self):
        return {
            'geographies': len(self.geographies),
            'clients': sum(len(index) for index in self.clients_by_geography.values()),
            'projects': sum(len(index) for index in self.projects_by_client.values()),
            'subprojects': sum(len(index) for index in self.subprojects_by_project.values()),
        }

    # Registration

    def add_geography(self, geography):
        self.geographies.add(geography)

    def add_client(self, client):
        self.clients_by_geography[client.geography_id].add(client)

    def add_project(self, project):
        self.projects_by_client[project.client_id].add(project)
        self.projects_by_name[compact_key(project.name)].append(project)

    def add_subproject(self, subproject):
        self.subprojects_by_project[subproject.project_id].add(subproject)

    # Lookups

    def find_geography(self, name):
        return self.geographies.get(name)

    def clients_of(self, geography):
        return list(self.clients_by_geography.get(geography.id, ()))

    def find_client(self, geography, name):
        index = self.clients_by_geography.get(geography.id)
        return index.get(name) if index else None

    def find_project(self, client, name):
        index = self.projects_by_client.get(client.id)
        return index.get(name) if index else None

    def find_subproject(self, project, name):
        index = self.subprojects_by_project.get(project.id)
        return index.get(name) if index else None

    def subprojects_of(self, project):
        return list(self.subprojects_by_project.get(project.id, ()))

    def projects_named(self, name):
        """Every project with this name, across all clients"""
        return list(self.projects_by_name.get(compact_key(name), ()))
