"""
Tests for hierarchy name lookups and row resolution
The cache is built from unsaved model instances so no database is needed
"""
import pytest

from billing.hierarchy_cache import HierarchyCache, compact_key, normalize_name
from billing.models import Client, Geography, Project, Subproject
from billing.parsers import ROW_KEY
from billing.resolver import EntityResolver, ResolutionMiss, extract_client_token

REPORT_FIELDS = ['geography', 'client_name', 'project_name', 'subproject_name']


@pytest.fixture
def cache():
    geographies = [
        Geography(id=1, name='US'),
        Geography(id=2, name='IND'),
        Geography(id=3, name='UK'),
        Geography(id=4, name='Empty'),
    ]
    clients = [
        Client(id=10, geography_id=1, name='Acme'),
        Client(id=11, geography_id=1, name='Globex'),
        Client(id=20, geography_id=2, name='Offshore_Client_3'),
        Client(id=21, geography_id=2, name='Offshore_Client_4'),
        Client(id=30, geography_id=3, name='Initech'),
    ]
    projects = [
        Project(id=100, client_id=10, geography_id=1, name='Intake'),
        Project(id=101, client_id=11, geography_id=1, name='Intake'),
        Project(id=200, client_id=20, geography_id=2, name='Offshore_Client_3_Process_18'),
        Project(id=300, client_id=30, geography_id=3, name='Claims'),
    ]
    subprojects = [
        Subproject(id=1000, project_id=100, client_id=10, geography_id=1, name='Site A'),
        Subproject(id=2000, project_id=200, client_id=20, geography_id=2, name='Offshore_Client_3_Location_7'),
        Subproject(id=3000, project_id=300, client_id=30, geography_id=3, name='Leeds'),
    ]
    return HierarchyCache(geographies, clients, projects, subprojects)


def row(geography, client, project, subproject, line=2):
    return {
        ROW_KEY: line,
        'geography': geography,
        'client_name': client,
        'project_name': project,
        'subproject_name': subproject,
    }


def test_normalize_name():
    assert normalize_name('  Site_A - North ') == 'site a north'
    assert normalize_name(None) == ''
    assert compact_key('Site A') == compact_key('site-a') == 'sitea'


def test_cache_counts_and_project_names(cache):
    assert cache.counts() == {'geographies': 4, 'clients': 5, 'projects': 4, 'subprojects': 3}
    assert sorted(project.id for project in cache.projects_named('INTAKE')) == [100, 101]
    assert cache.projects_named('Nothing') == []


def test_explicit_client_with_loose_spelling(cache):
    resolution = EntityResolver(cache).resolve(row('us', 'ACME', 'intake', 'site-a'))

    assert resolution.geography.id == 1
    assert resolution.client.id == 10
    assert resolution.project.id == 100
    assert resolution.subproject.id == 1000


def test_compact_spelling_matches(cache):
    resolution = EntityResolver(cache).resolve(row('US', 'Acme', 'Intake', 'SiteA'))

    assert resolution.subproject.name == 'Site A'


def test_client_from_location_token(cache):
    resolution = EntityResolver(cache).resolve(
        row('IND', '', 'Offshore_Client_3_Process_18', 'Offshore_Client_3_Location_7')
    )

    assert resolution.client.id == 20
    assert resolution.subproject.id == 2000


def test_single_client_fallback(cache):
    resolution = EntityResolver(cache).resolve(row('UK', '', 'Claims', 'Leeds'))

    assert resolution.client.name == 'Initech'


def test_ambiguous_client_is_a_miss(cache):
    with pytest.raises(ResolutionMiss) as excinfo:
        EntityResolver(cache).resolve(row('US', '', 'Intake', 'Site A'))

    assert 'add a Client column' in str(excinfo.value)


@pytest.mark.parametrize('values, message', [
    (('Mars', 'Acme', 'Intake', 'Site A'), 'Geography "Mars" not found'),
    (('US', 'Nobody', 'Intake', 'Site A'), 'Client "Nobody" not found under geography "US"'),
    (('Empty', '', 'Intake', 'Site A'), 'No client found for geography "Empty"'),
    (('US', 'Acme', 'Review', 'Site A'), 'Process Type "Review" not found under client "Acme"'),
    (('US', 'Acme', 'Intake', 'Site B'), 'Location "Site B" not found under process "Intake"'),
])
def test_misses_at_each_level(cache, values, message):
    with pytest.raises(ResolutionMiss) as excinfo:
        EntityResolver(cache).resolve(row(*values))

    assert str(excinfo.value) == message


def test_resolve_all_collects_every_miss(cache):
    resolver = EntityResolver(cache, REPORT_FIELDS)

    result = resolver.resolve_all([
        row('US', 'Acme', 'Intake', 'Site A', line=2),
        row('US', 'Acme', 'Intake', 'Site B', line=3),
        row('Mars', '', 'Intake', 'Site A', line=4),
    ])

    assert len(result['resolved']) == 1
    assert [record[ROW_KEY] for record in result['skipped']] == [3, 4]
    assert result['skipped'][0]['subproject_name'] == 'Site B'
    assert result['skipped'][1]['errors'] == 'Geography "Mars" not found'


def test_extract_client_token():
    assert extract_client_token('Site A', 'Offshore_Client_12_Process_1') == 'Offshore_Client_12'
    assert extract_client_token('offshore_client_3_location_7') == 'offshore_client_3'
    assert extract_client_token('Site A', None) is None
