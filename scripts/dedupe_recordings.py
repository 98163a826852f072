"""Remove duplicate recordings left behind by interrupted submissions.

A member should have at most one recording per project.  When a submission
fails half way, older recordings can survive next to the new one.  This keeps
the newest recording for every (project, member) pair and deletes the rest
together with their assets.
"""
import argparse
import logging

from bandrec.config import load_settings
from bandrec.store import PostgresStore, StoreAdapter

logger = logging.getLogger(__name__)


def find_duplicates(recordings: list[dict]) -> list[dict]:
    """Return every recording that is not the newest of its pair."""
    newest: dict[tuple, dict] = {}
    stale = []
    for recording in recordings:
        key = (recording.get('project'), recording.get('member'))
        current = newest.get(key)
        if current is None:
            newest[key] = recording
        elif (recording.get('created_at') or '') > (current.get('created_at') or ''):
            stale.append(current)
            newest[key] = recording
        else:
            stale.append(recording)
    return stale


def migrate(store: StoreAdapter, dry_run: bool = False) -> int:
    stale = find_duplicates(store.query('recording'))
    if dry_run:
        return len(stale)
    for recording in stale:
        store.delete(recording['id'])
        if recording.get('file'):
            store.delete_asset(recording['file'])
        logger.info(
            "Removed duplicate recording %s (project %s, member %s)",
            recording['id'], recording.get('project'), recording.get('member'),
        )
    return len(stale)


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Remove duplicate recordings")
    parser.add_argument("--dry-run", action="store_true", help="Only count the duplicates")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    count = migrate(PostgresStore.from_settings(load_settings()), dry_run=args.dry_run)
    if not count:
        print('No duplicates found.')
    elif args.dry_run:
        print(f'{count} duplicate recordings would be removed.')
    else:
        print(f'Removed {count} duplicate recordings.')
