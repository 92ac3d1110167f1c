"""
Resolve upload rows onto existing Geography -> Client -> Project -> Subproject chains
"""
import logging
import re
from collections import namedtuple

from billing.parsers import ROW_KEY

logger = logging.getLogger(__name__)

Resolution = namedtuple('Resolution', ['geography', 'client', 'project', 'subproject'])

# "Offshore_Client_3_Process_18" -> "Offshore_Client_3"
CLIENT_PATTERN = re.compile(r'^(.*?_Client_\d+)', re.IGNORECASE)


def extract_client_token(*values):
    """First `<tag>_Client_<n>` prefix found in the given strings"""
    for value in values:
        found = CLIENT_PATTERN.match(str(value or '').strip())
        if found:
            return found.group(1)
    return None


class ResolutionMiss(Exception):
    """A row referenced a hierarchy node that does not exist"""


class EntityResolver:
    """
    Walk a HierarchyCache for each validated row

    Geography is a closed reference set and is never created here. Client comes from the
    explicit client column when present, then from a `<tag>_Client_<n>` token in the
    location or process type, then from the geography's only client. Anything else is a miss.
    """

    def __init__(self, cache, report_fields=()):
        self.cache = cache
        self.report_fields = list(report_fields)

    def resolve(self, row):
        """
        Returns:
            Resolution for the row

        Raises:
            ResolutionMiss: with the reason the row was skipped
        """
        geography = self.cache.find_geography(row.get('geography'))
        if geography is None:
            raise ResolutionMiss(f'Geography "{row.get("geography")}" not found')

        client = self.resolve_client(geography, row)

        project_name = row.get('project_name')
        project = self.cache.find_project(client, project_name)
        if project is None:
            raise ResolutionMiss(f'Process Type "{project_name}" not found under client "{client.name}"')

        subproject_name = row.get('subproject_name')
        subproject = self.cache.find_subproject(project, subproject_name)
        if subproject is None:
            raise ResolutionMiss(f'Location "{subproject_name}" not found under process "{project.name}"')

        return Resolution(geography, client, project, subproject)

    def resolve_client(self, geography, row):
        explicit = row.get('client_name')
        if explicit:
            client = self.cache.find_client(geography, explicit)
            if client is None:
                raise ResolutionMiss(f'Client "{explicit}" not found under geography "{geography.name}"')
            return client

        token = extract_client_token(row.get('subproject_name'), row.get('project_name'))
        if token:
            client = self.cache.find_client(geography, token)
            if client is not None:
                return client

        clients = self.cache.clients_of(geography)
        if len(clients) == 1:
            return clients[0]
        if not clients:
            raise ResolutionMiss(f'No client found for geography "{geography.name}"')
        raise ResolutionMiss(
            f'Cannot determine client for geography "{geography.name}" '
            f'({len(clients)} clients); add a Client column'
        )

    def resolve_all(self, rows):
        """
        Resolve every row, collecting misses instead of stopping at the first

        Returns:
            dict:
            {
                'resolved': list of (row, Resolution),
                'skipped': list of report rows with an 'errors' message
            }
        """
        resolved = []
        skipped = []

        for row in rows:
            try:
                resolved.append((row, self.resolve(row)))
            except ResolutionMiss as e:
                skipped.append(self.skip_record(row, str(e)))

        if skipped:
            logger.warning(f"{len(skipped)} of {len(resolved) + len(skipped)} rows could not be resolved")
        return {'resolved': resolved, 'skipped': skipped}

    def skip_record(self, row, reason):
        record = {ROW_KEY: row.get(ROW_KEY)}
        for field in self.report_fields:
            record[field] = row.get(field, '')
        record['errors'] = reason
        return record
