import pytest

from bandrec.auth import decode_capability_token
from bandrec.cache import TTLCache
from bandrec.projects import AccessDenied, NotAllowed, NotFound, ProjectNotFound, ProjectService
from fake_store import seed_band

pytestmark = pytest.mark.nodb

LABELS = ["1st Trumpet (Kari)", "Clarinet Anne", "Tuba"]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def service(store, settings):
    seed_band(store)
    return ProjectService(store, settings)


@pytest.fixture
def project(service):
    return service.create_project('u1', 'b1', 'March', b'<score/>', LABELS, '96', filename='march.musicxml')


def refs(view):
    return [ref for a in view['assignments'] for ref in a['members']]


def test_create_project_assigns_parts_and_returns_owner_view(project, store):
    assert project['owner'] == 'u1'
    assert project['relationship'] == 'owner'
    assert project['bpm'] == 96
    assert [a['label'] for a in project['assignments']] == LABELS
    assert [[r['ref'] for r in a['members']] for a in project['assignments']] == [['m1'], ['m2'], []]
    assert project['sheetmusic_url'] == f"/api/assets/{project['sheetmusic']}"
    assert store.assets[project['sheetmusic']]['data'] == b'<score/>'


def test_create_project_uses_visible_members_only(service, store):
    view = service.create_project('u1', 'b1', 'Hidden', b'x', ["Solo Hidden"], 100)
    assert view['assignments'][0]['members'] == []


def test_create_project_rejects_unknown_band(service):
    with pytest.raises(NotFound):
        service.create_project('u1', 'nope', 'X', b'x', [], 100)


def test_admins_get_tokens_for_every_member(service, project, settings):
    for requester, relationship in (('u1', 'owner'), ('u2', 'band_admin')):
        view = service.get_project(requester, project['id'])
        assert view['relationship'] == relationship
        for ref in refs(view):
            claims = decode_capability_token(ref['token'], settings.site.tokensecret)
            assert claims.member_id == ref['ref']
            assert claims.project_id == project['id']


def test_musician_gets_structure_without_tokens(service, project):
    view = service.get_project('m1', project['id'])
    assert view['relationship'] == 'musician'
    assert [a['label'] for a in view['assignments']] == LABELS
    assert all('token' not in ref for ref in refs(view))


def test_unauthorized_and_missing_are_absent(service, project):
    assert service.get_project('u4', project['id']) is None
    assert service.get_project('u1', 'missing') is None


def test_strict_reads_separate_missing_from_forbidden(service, project):
    with pytest.raises(AccessDenied):
        service.get_project('u4', project['id'], strict=True)
    with pytest.raises(ProjectNotFound):
        service.get_project('u1', 'missing', strict=True)


def test_recordings_are_merged_into_member_references(service, project):
    service.submit_recording('m1', project['id'], 'm1', 'trumpet', b'take')
    view = service.get_project('u1', project['id'], force_fresh=True)
    kari = view['assignments'][0]['members'][0]
    assert kari['recording']['url'].startswith('/api/assets/')
    assert kari['recording']['volume'] == 100
    assert 'recording' not in view['assignments'][1]['members'][0]


def test_submit_recording_twice_keeps_one(service, project, store):
    service.submit_recording('u1', project['id'], 'm2', 'clarinet', b'first')
    service.submit_recording('u1', project['id'], 'm2', 'clarinet', b'second')
    recordings = [r for r in service.list_recordings(project['id']) if r['member'] == 'm2']
    assert len(recordings) == 1
    asset_id = recordings[0]['url'].rsplit('/', 1)[1]
    assert store.assets[asset_id]['data'] == b'second'


def test_musician_cannot_submit_for_someone_else(service, project, store):
    with pytest.raises(NotAllowed):
        service.submit_recording('m1', project['id'], 'm2', None, b'x')
    with pytest.raises(AccessDenied):
        service.submit_recording('u4', project['id'], 'u4', None, b'x')
    assert store.count('upload') == 1  # the sheet music only


def test_update_project_by_owner_merges_fields(service, project, store):
    view = service.update_project('u1', project['id'], {'name': 'Renamed', 'bpm': '120', 'owner': 'u4'})
    assert view['name'] == 'Renamed'
    assert view['bpm'] == 120
    assert store.docs[project['id']]['owner'] == 'u1'
    # Whole-document replace keeps fields that were not supplied
    assert store.docs[project['id']]['sheetmusic'] == project['sheetmusic']


def test_update_project_does_not_persist_view_fields(service, project, store):
    view = service.get_project('u1', project['id'])
    service.update_project('u1', project['id'], {'assignments': view['assignments'], 'relationship': 'owner'})
    stored = store.docs[project['id']]
    assert 'relationship' not in stored
    assert all(set(ref) == {'ref'} for a in stored['assignments'] for ref in a['members'])


def test_update_project_by_non_owner_fails_before_writing(service, project, store):
    before = dict(store.docs[project['id']])
    replaces = store.count('replace')
    for requester in ('u2', 'm1', 'u4'):
        with pytest.raises(NotAllowed):
            service.update_project(requester, project['id'], {'name': 'Hijacked'})
    assert store.count('replace') == replaces
    assert store.docs[project['id']] == before


def test_update_missing_project(service):
    with pytest.raises(ProjectNotFound):
        service.update_project('u1', 'missing', {'name': 'x'})


def test_project_reads_are_not_cached_by_default(service, project, store):
    service.get_project('u1', project['id'])
    gets = store.count('get')
    service.get_project('u1', project['id'])
    assert store.count('get') > gets
    assert len(service.project_cache) == 0


def test_project_cache_when_enabled(store, settings):
    seed_band(store)
    settings.cache.cache_projects = True
    clock = FakeClock()
    service = ProjectService(store, settings, clock=clock)
    created = service.create_project('u1', 'b1', 'Cached', b'x', LABELS, 100)

    first = service.get_project('u1', created['id'])
    calls = len(store.calls)
    clock.now += settings.cache.ttl_seconds - 1
    second = service.get_project('u1', created['id'])
    assert second == first
    assert len(store.calls) == calls

    # Per-requester keys: the musician view is loaded separately
    musician = service.get_project('m1', created['id'])
    assert all('token' not in ref for ref in refs(musician))

    clock.now += 1
    service.get_project('u1', created['id'])
    assert len(store.calls) > calls


def test_forced_fresh_read_sees_own_write_despite_cache(store, settings):
    seed_band(store)
    settings.cache.cache_projects = True
    service = ProjectService(store, settings)
    created = service.create_project('u1', 'b1', 'Before', b'x', LABELS, 100)
    service.get_project('u1', created['id'])

    updated = service.update_project('u1', created['id'], {'name': 'After'})
    assert updated['name'] == 'After'
    # The forced-fresh read refreshed the writer's own entry; other
    # requesters keep their cached view until expiry or a purge
    assert service.get_project('u1', created['id'])['name'] == 'After'
    service.project_cache.set('project:u2:' + created['id'], {'name': 'Stale'})
    assert service.get_project('u2', created['id'])['name'] == 'Stale'
    assert service.get_project('u2', created['id'], force_fresh=True)['name'] == 'After'
    service.purge_cache()
    assert service.get_project('u2', created['id'])['name'] == 'After'


def test_admin_and_member_profiles_are_cached(service, store):
    admin = service.get_admin_user('owner@example.org')
    assert admin['id'] == 'u1'
    queries = store.count('query')
    admin['name'] = 'mutated'
    assert service.get_admin_user('owner@example.org')['name'] == 'Olav'
    assert store.count('query') == queries

    member = service.get_user('m1')
    assert member['band'] == {'id': 'b1', 'name': 'Brass', 'logo_url': '/api/assets/image-logo'}
    gets = store.count('get')
    service.get_user('m1')
    assert store.count('get') == gets


def test_disabled_admin_is_not_found(service, store):
    store.docs['u2']['enabled'] = False
    assert service.get_admin_user('admin@example.org') is None


def test_bands_and_members(service):
    bands = service.get_bands_for_admin('u2')
    assert [b['id'] for b in bands] == ['b1']
    assert bands[0]['logo_url'] == '/api/assets/image-logo'
    assert sorted(m['id'] for m in bands[0]['members']) == ['m1', 'm2', 'm3']
    assert service.get_bands_for_admin('u4') == []
    assert [m['name'] for m in service.get_members('b1')] == ['Anne Berg', 'Jon Dahl', 'Kari Olsen']


def test_get_projects_newest_first_with_inclusive_slice(service):
    ids = [service.create_project('u1', 'b1', f'P{n}', b'x', [], 100)['id'] for n in range(4)]
    listed = service.get_projects('u1', start=0, end=1)
    assert [p['id'] for p in listed] == [ids[3], ids[2]]
    assert service.get_projects('u2') == []


def test_project_score_data(service, project):
    data = service.get_project_score_data(project['id'])
    assert data['sheetmusic_url'] == project['sheetmusic_url']
    assert [a['label'] for a in data['assignments']] == LABELS
    assert service.get_project_score_data('missing') is None


def test_update_or_create_member(service, store):
    created = service.update_or_create_member(
        {'name': 'Ola Nord', 'phone': '123, 456', 'email': 'ola@example.org', 'instrument': 'Bb Cornet',
         'secret': 'ignored'},
        band_id='b1',
    )
    assert created['phone'] == ['123', '456']
    assert created['email'] == ['ola@example.org']
    assert created['instrument'] == 'cornet'
    assert created['visible'] is True
    assert created['band'] == 'b1'
    assert 'secret' not in created

    first = service.update_or_create_member({'id': created['id']}, portrait={'data': b'img1'})
    second = service.update_or_create_member({'id': created['id'], 'name': 'Ola N.'}, portrait={'data': b'img2'})
    assert second['name'] == 'Ola N.'
    assert second['phone'] == ['123', '456']
    assert first['portrait'] not in store.assets
    assert store.assets[second['portrait']]['data'] == b'img2'


@pytest.mark.parametrize('assignments', [
    [{'label': 'Solo', 'members': [{'member': 'm1'}]}],
    [{'key': 'k1', 'members': []}],
    ['Solo'],
    {'label': 'Solo'},
])
def test_update_project_rejects_malformed_assignments(service, project, store, assignments):
    replaces = store.count('replace')
    with pytest.raises(ValueError):
        service.update_project('u1', project['id'], {'assignments': assignments})
    assert store.count('replace') == replaces
    # Readers are unaffected by the rejected update
    for requester in ('u1', 'u2', 'm1'):
        view = service.get_project(requester, project['id'])
        assert [a['label'] for a in view['assignments']] == LABELS


def test_update_project_normalises_assignments(service, project, store):
    view = service.update_project('u1', project['id'], {
        'assignments': [{'label': 'Duet', 'members': [{'ref': 'm2', 'token': 'stale'}]}],
    })
    stored = store.docs[project['id']]['assignments']
    assert stored[0]['label'] == 'Duet'
    assert stored[0]['key']
    assert stored[0]['members'] == [{'ref': 'm2'}]
    assert service.get_project('m2', project['id'])['relationship'] == 'musician'
    assert view['assignments'][0]['members'][0]['token'] != 'stale'


def test_project_asset_ids(service, project):
    service.submit_recording('m1', project['id'], 'm1', 'trumpet', b'take')
    recording = service.list_recordings(project['id'])[0]
    ids = service.project_asset_ids(project['id'])
    assert ids == {project['sheetmusic'], 'image-logo', recording['url'].rsplit('/', 1)[1]}
    assert service.project_asset_ids('missing') == set()
