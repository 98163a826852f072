"""Per-member recordings with replace-not-accumulate semantics.

A member has at most one recording per project.  Submitting a new one deletes
the previous recordings (document first, then its asset) before the new asset
is uploaded and the new document created.  Submissions for the same
(project, member) pair are serialised with :class:`KeyedLock`; the deletes are
independent, so a store failure half way through leaves whatever was already
removed removed.
"""

import logging
import threading
from contextlib import contextmanager

from bandrec.store import StoreAdapter

logger = logging.getLogger(__name__)

DEFAULT_VOLUME = 100


class KeyedLock:
    """One mutex per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[object, list] = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class RecordingReconciler:
    def __init__(self, store: StoreAdapter, locks: KeyedLock | None = None):
        self.store = store
        self.locks = locks or KeyedLock()

    def find_recordings(self, project_id: str, member_id: str) -> list[dict]:
        return self.store.query('recording', {'project': project_id, 'member': member_id})

    def find_project_recordings(self, project_id: str) -> list[dict]:
        return self.store.query('recording', {'project': project_id})

    def remove_recordings(self, recordings: list[dict]) -> None:
        removed = 0
        for recording in recordings:
            try:
                self.store.delete(recording['id'])
                if recording.get('file'):
                    self.store.delete_asset(recording['file'])
            except Exception:
                logger.error(
                    "Reconciliation stopped after removing %d of %d recordings; recording %s may be left partially removed",
                    removed, len(recordings), recording['id'],
                )
                raise
            removed += 1

    def submit_recording(self, project_id: str, member_id: str, instrument: str | None, data,
                         filename: str | None = None, content_type: str = 'audio/mpeg') -> dict:
        """Replace the member's recording for the project and return the new one."""
        with self.locks.hold((project_id, member_id)):
            previous = self.find_recordings(project_id, member_id)
            if previous:
                logger.info(
                    "Replacing %d recording(s) for member %s in project %s",
                    len(previous), member_id, project_id,
                )
            self.remove_recordings(previous)
            asset = self.store.upload(
                'file', data, {'filename': filename, 'content_type': content_type}
            )
            recording = self.store.create({
                'type': 'recording',
                'project': project_id,
                'member': member_id,
                'file': asset['id'],
                'volume': DEFAULT_VOLUME,
                'instrument': instrument,
            })
        logger.info("Stored recording %s for member %s in project %s", recording['id'], member_id, project_id)
        return recording

    def list_recordings(self, project_id: str) -> list[dict]:
        """Return the project's recordings with playback URL and volume."""
        return [
            {
                'id': recording['id'],
                'created_at': recording.get('created_at'),
                'member': recording['member'],
                'instrument': recording.get('instrument'),
                'url': self.store.asset_url(recording.get('file')),
                'volume': recording.get('volume', DEFAULT_VOLUME),
            }
            for recording in self.find_project_recordings(project_id)
        ]
