"""Initialize the PostgreSQL schema for the BandRec document store."""
from bandrec.config import load_settings
from bandrec.store import PostgresStore


def main():
    PostgresStore.from_settings(load_settings()).init_schema()

if __name__ == "__main__":
    main()
