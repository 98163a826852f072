"""Requester classification against a project's ownership graph."""

import enum


class Relationship(enum.Enum):
    OWNER = 'owner'
    BAND_ADMIN = 'band_admin'
    MUSICIAN = 'musician'
    UNAUTHORIZED = 'unauthorized'

    @property
    def is_admin(self) -> bool:
        return self in (Relationship.OWNER, Relationship.BAND_ADMIN)

    @property
    def may_read(self) -> bool:
        return self is not Relationship.UNAUTHORIZED


def assigned_member_ids(project: dict) -> set[str]:
    ids = set()
    for assignment in project.get('assignments') or []:
        for ref in assignment.get('members') or []:
            ids.add(ref['ref'])
    return ids


def classify(requester_id: str | None, project: dict) -> Relationship:
    """Return how ``requester_id`` relates to ``project``.

    ``project`` must carry ``owner``, the resolved ``band_admins`` and its
    ``assignments``.  Checks run in priority order, so an owner who also plays
    a part is still classified as owner."""
    if not requester_id:
        return Relationship.UNAUTHORIZED
    if project.get('owner') == requester_id:
        return Relationship.OWNER
    if requester_id in (project.get('band_admins') or []):
        return Relationship.BAND_ADMIN
    if requester_id in assigned_member_ids(project):
        return Relationship.MUSICIAN
    return Relationship.UNAUTHORIZED
