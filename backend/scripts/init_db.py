import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from discovery.database import get_engine, init_schema


def main() -> None:
    init_schema(get_engine())
    print("Database initialized with the discovery schema.")


if __name__ == "__main__":
    main()
