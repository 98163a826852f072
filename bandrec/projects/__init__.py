"""Project reads and mutations.

:class:`ProjectService` assembles requester-scoped project views: it
classifies the requester, mints capability tokens for admins, merges each
member's recording into the assignments and (when enabled) caches the result
per (requester, project).  Mutations always finish with a forced-fresh read so
the caller sees its own write even while an older view is still cached.
"""

import logging
import time

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from bandrec.access import Relationship, classify
from bandrec.auth import annotate_tokens
from bandrec.cache import TTLCache, admin_key, member_key, project_key
from bandrec.parts import assign_parts, filter_instrument_name, new_key
from bandrec.recordings import RecordingReconciler
from bandrec.store import StoreAdapter, read_binary

logger = logging.getLogger(__name__)

# Keys the owner cannot change through a shallow update
PROTECTED_FIELDS = ('id', 'type', 'owner', 'created_at')

# Keys that only exist on assembled views and are never stored
VIEW_FIELDS = ('band_admins', 'relationship', 'sheetmusic_url')
VIEW_REF_FIELDS = ('token', 'recording')

MEMBER_FIELDS = ('id', 'name', 'phone', 'email', 'instrument', 'subgroup', 'visible')


class NotFound(Exception):
    pass


class ProjectNotFound(NotFound):
    pass


class AccessDenied(Exception):
    """The requester has no relationship to the project."""


class NotAllowed(AccessDenied):
    """The requester may not mutate the project."""


def strip_view_fields(project: dict) -> dict:
    """Return a copy of ``project`` without the fields added by views."""
    doc = {k: v for k, v in project.items() if k not in VIEW_FIELDS}
    if 'assignments' in doc:
        doc['assignments'] = [
            {
                **assignment,
                'members': [
                    {k: v for k, v in ref.items() if k not in VIEW_REF_FIELDS}
                    for ref in assignment.get('members') or []
                ],
            }
            for assignment in doc['assignments'] or []
        ]
    return doc


class MemberRef(BaseModel):
    ref: str


class Assignment(BaseModel):
    key: str = Field(default_factory=new_key)
    label: str
    members: list[MemberRef] = []


_assignments = TypeAdapter(list[Assignment])


def validate_assignments(assignments) -> list[dict]:
    """Return ``assignments`` normalised to ``{key, label, members: [{ref}]}``.

    Raises :class:`ValueError` for anything that does not have that shape."""
    try:
        parsed = _assignments.validate_python(assignments)
    except ValidationError as exc:
        raise ValueError(f"Invalid assignments: {exc.error_count()} error(s)") from exc
    return [assignment.model_dump() for assignment in parsed]


def split_list(value) -> list:
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    return value


class ProjectService:
    def __init__(self, store: StoreAdapter, settings, identity_cache: TTLCache | None = None,
                 project_cache: TTLCache | None = None, reconciler: RecordingReconciler | None = None,
                 clock=time.monotonic):
        self.store = store
        self.settings = settings
        ttl = settings.cache.ttl_seconds
        self.identity_cache = identity_cache or TTLCache(ttl, clock=clock, name='identity cache')
        self.project_cache = project_cache or TTLCache(ttl, clock=clock, name='project cache')
        self.reconciler = reconciler or RecordingReconciler(store)

    # Identity lookups ----------------------------------------------------

    def get_admin_user(self, email: str) -> dict | None:
        """Return the enabled admin profile for ``email``."""
        def load():
            rows = self.store.query('admin', {'email': email, 'enabled': True}, end=0)
            if not rows:
                return None
            admin = rows[0]
            admin['portrait_url'] = self.store.asset_url(admin.get('portrait'))
            return admin
        return self.identity_cache.get_or_load(admin_key(email), load)

    def get_user(self, member_id: str) -> dict | None:
        """Return a member profile including its band's name and logo."""
        def load():
            member = self.store.get(member_id)
            if not member or member.get('type') != 'member':
                return None
            member['portrait_url'] = self.store.asset_url(member.get('portrait'))
            band = self.store.get(member['band']) if member.get('band') else None
            if band:
                member['band'] = {
                    'id': band['id'],
                    'name': band.get('name'),
                    'logo_url': self.store.asset_url(band.get('logo')),
                }
            return member
        return self.identity_cache.get_or_load(member_key(member_id), load)

    def get_bands_for_admin(self, admin_id: str) -> list[dict]:
        bands = self.store.query('band', {'admins': [admin_id]})
        for band in bands:
            band['logo_url'] = self.store.asset_url(band.get('logo'))
            members = self.store.query('member', {'band': band['id'], 'visible': True})
            for member in members:
                member['portrait_url'] = self.store.asset_url(member.get('portrait'))
            band['members'] = members
        return bands

    def get_members(self, band_id: str) -> list[dict]:
        """Return the band's visible members ordered by name."""
        members = self.store.query('member', {'band': band_id, 'visible': True}, order_by='name')
        return [
            {'id': m['id'], 'name': m.get('name'), 'instrument': m.get('instrument')}
            for m in members
        ]

    def update_or_create_member(self, data: dict, band_id: str | None = None, portrait: dict | None = None) -> dict:
        """Create a member or overwrite the whitelisted fields of an existing one.

        ``portrait`` is ``{"data": bytes or stream, "filename": ..., "content_type": ...}``.
        A replaced portrait asset is removed after the new document is stored."""
        data = dict(data)
        for prop in ('phone', 'email'):
            if prop in data:
                data[prop] = split_list(data[prop])
        if data.get('instrument'):
            data['instrument'] = filter_instrument_name(data['instrument'], self.settings.instruments) or data['instrument']

        old = None
        if data.get('id'):
            old = self.store.get(data['id'])
            if old is not None and old.get('type') != 'member':
                raise NotFound(f"{data['id']} is not a member")

        portrait_asset = None
        if portrait:
            portrait_asset = self.store.upload('image', portrait['data'], {
                'filename': portrait.get('filename'),
                'content_type': portrait.get('content_type', 'image/jpeg'),
            })

        update = {'type': 'member', 'visible': True}
        update.update(old or {})
        update.update({k: data[k] for k in MEMBER_FIELDS if k in data})
        if band_id:
            update['band'] = band_id
        if portrait_asset:
            update['portrait'] = portrait_asset['id']
        result = self.store.replace(update) if update.get('id') else self.store.create(update)

        if old and old.get('portrait') and portrait_asset:
            self.store.delete_asset(old['portrait'])
        return result

    # Projects -----------------------------------------------------------

    def get_projects(self, owner_id: str, start: int = 0, end: int = 20) -> list[dict]:
        """Return the owner's projects, newest first, ``start``..``end`` inclusive."""
        projects = self.store.query(
            'project', {'owner': owner_id}, order_by='created_at', descending=True, start=start, end=end
        )
        return [
            {
                'id': p['id'],
                'name': p.get('name'),
                'sheetmusic': p.get('sheetmusic'),
                'sheetmusic_url': self.store.asset_url(p.get('sheetmusic')),
            }
            for p in projects
        ]

    def get_project_score_data(self, project_id: str) -> dict | None:
        project = self.store.get(project_id)
        if not project or project.get('type') != 'project':
            return None
        return {
            'id': project['id'],
            'sheetmusic_url': self.store.asset_url(project.get('sheetmusic')),
            'assignments': project.get('assignments') or [],
        }

    def get_project(self, requester_id: str, project_id: str, force_fresh: bool = False,
                    strict: bool = False) -> dict | None:
        """Return the project as seen by ``requester_id``.

        Admins (owner or band admin) get a capability token on every assigned
        member; musicians get the same structure without tokens.  A missing
        project and an unauthorized requester both give ``None`` unless
        ``strict`` is set, in which case :class:`ProjectNotFound` or
        :class:`AccessDenied` is raised."""
        key = project_key(requester_id, project_id)
        if not force_fresh:
            cached = self.project_cache.get(key)
            if cached is not None:
                return cached

        project = self.store.get(project_id)
        if not project or project.get('type') != 'project':
            logger.warning("Project %s not found", project_id)
            if strict:
                raise ProjectNotFound(project_id)
            return None

        band = self.store.get(project['band']) if project.get('band') else None
        project['band_admins'] = list((band or {}).get('admins') or [])
        relationship = classify(requester_id, project)
        logger.debug("Requester %s is %s of project %s", requester_id, relationship.value, project_id)
        if not relationship.may_read:
            logger.warning("Requester %s is neither admin nor musician of project %s", requester_id, project_id)
            if strict:
                raise AccessDenied(project_id)
            return None

        if relationship.is_admin:
            annotate_tokens(project, self.settings.site.tokensecret, self.settings.site.token_ttl_seconds)

        recordings: dict[str, dict] = {}
        for recording in self.reconciler.list_recordings(project_id):
            recordings.setdefault(recording['member'], recording)
        for assignment in project.get('assignments') or []:
            for ref in assignment.get('members') or []:
                if ref['ref'] in recordings:
                    ref['recording'] = recordings[ref['ref']]

        project['sheetmusic_url'] = self.store.asset_url(project.get('sheetmusic'))
        project['relationship'] = relationship.value
        if self.settings.cache.cache_projects:
            self.project_cache.set(key, project)
        return project

    def create_project(self, requester_id: str, band_id: str, name: str, sheet_music, labels: list[str],
                       bpm, roster: list[dict] | None = None, filename: str | None = None) -> dict:
        """Create a project owned by ``requester_id`` and return the owner's view."""
        name = (name or '').strip()
        if not name:
            raise ValueError('Project name is required')
        bpm = int(bpm)
        band = self.store.get(band_id)
        if not band or band.get('type') != 'band':
            raise NotFound(f"Band {band_id} not found")
        if roster is None:
            roster = self.store.query('member', {'band': band_id, 'visible': True})

        assignments = assign_parts(labels, roster)
        asset = self.store.upload('file', sheet_music, {
            'filename': filename,
            'content_type': 'application/vnd.recordare.musicxml+xml',
        })
        project = self.store.create({
            'type': 'project',
            'owner': requester_id,
            'band': band_id,
            'name': name,
            'bpm': bpm,
            'sheetmusic': asset['id'],
            'assignments': assignments,
        })
        logger.info("Project %s created by %s with %d parts", project['id'], requester_id, len(assignments))
        return self.get_project(requester_id, project['id'], force_fresh=True)

    def update_project(self, requester_id: str, project_id: str, data: dict) -> dict | None:
        """Shallow-merge ``data`` into the project; only the owner may do this."""
        current = self.store.get(project_id)
        if not current or current.get('type') != 'project':
            raise ProjectNotFound(project_id)
        if current.get('owner') != requester_id:
            logger.warning("Requester %s tried to update project %s owned by %s",
                           requester_id, project_id, current.get('owner'))
            raise NotAllowed(project_id)

        changes = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        if 'assignments' in changes:
            changes['assignments'] = validate_assignments(changes['assignments'])
        changes = strip_view_fields(changes)
        if 'bpm' in changes:
            changes['bpm'] = int(changes['bpm'])
        current.update(changes)
        self.store.replace(current)
        return self.get_project(requester_id, project_id, force_fresh=True)

    # Recordings ---------------------------------------------------------

    def submit_recording(self, requester_id: str, project_id: str, member_id: str, instrument: str | None,
                         data, filename: str | None = None) -> dict | None:
        """Replace ``member_id``'s recording and return the requester's fresh view.

        Admins may submit for any member; a musician only for themselves."""
        view = self.get_project(requester_id, project_id, force_fresh=True, strict=True)
        relationship = Relationship(view['relationship'])
        if not relationship.is_admin and requester_id != member_id:
            raise NotAllowed(project_id)
        self.reconciler.submit_recording(project_id, member_id, instrument, read_binary(data), filename)
        return self.get_project(requester_id, project_id, force_fresh=True)

    def list_recordings(self, project_id: str) -> list[dict]:
        return self.reconciler.list_recordings(project_id)

    def project_asset_ids(self, project_id: str) -> set[str]:
        """Return the ids of the assets a project refers to.

        That is the sheet music, the band logo and every recording file."""
        project = self.store.get(project_id)
        if not project or project.get('type') != 'project':
            return set()
        ids = {project.get('sheetmusic')}
        band = self.store.get(project['band']) if project.get('band') else None
        if band:
            ids.add(band.get('logo'))
        ids.update(r.get('file') for r in self.reconciler.find_project_recordings(project_id))
        ids.discard(None)
        return ids

    def purge_cache(self) -> None:
        self.identity_cache.purge_all()
        self.project_cache.purge_all()
