import argparse
import logging
import os

from bandrec.api import run_server
from bandrec.config import load_settings
from bandrec.projects import ProjectService
from bandrec.store import PostgresStore


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the BandRec server")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 8080)))
    parser.add_argument("--env", default=None, help="Configuration profile (default: BANDREC_ENV)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    settings = load_settings(args.env)
    store = PostgresStore.from_settings(settings)
    store.init_schema()
    run_server(ProjectService(store, settings), args.host, args.port)


if __name__ == "__main__":
    main()
