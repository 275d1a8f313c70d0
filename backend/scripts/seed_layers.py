"""CLI script to load layers from a JSON file into the backend DB.
Usage: python scripts/seed_layers.py layers.json

The file holds a list of objects with `name`, `year_from`, `year_to`,
`words` and optionally `description`. Layers whose name already exists
are skipped.
"""
import sys
import json
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `chrono` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from chrono.database import engine, create_db_and_tables
from chrono import services
from chrono.errors import ValidationError


def main(path: pathlib.Path) -> int:
    items = json.loads(path.read_text(encoding='utf-8'))
    if not isinstance(items, list):
        print('Expected a JSON list of layers')
        return 1
    create_db_and_tables()
    created = 0
    skipped = 0
    with Session(engine) as session:
        svc = services.LayerService(session)
        for item in items:
            values = {k: item.get(k) for k in ('name', 'description', 'year_from', 'year_to', 'words') if k in item}
            try:
                svc.create(values)
                created += 1
            except (ValidationError, KeyError, TypeError) as e:
                skipped += 1
                print(f'Skipped {item.get("name")!r}: {e}')
    print(f'Created layers: {created}, skipped {skipped}')
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('path', type=pathlib.Path)
    args = parser.parse_args()
    sys.exit(main(args.path))
