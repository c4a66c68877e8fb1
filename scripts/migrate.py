import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from main import _migrate
from portal.config import Settings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply the sign-in portal schema migrations")
    parser.add_argument(
        "--print-sql",
        action="store_true",
        help="Print the migration script without contacting the store",
    )
    parser.add_argument(
        "--include-bootstrap",
        action="store_true",
        help="Prepend the exec_sql function definition to printed SQL",
    )
    return parser.parse_args()


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    args = parse_args()
    code = _migrate(
        Settings.from_env(),
        print_sql=args.print_sql,
        include_bootstrap=args.include_bootstrap,
    )
    raise SystemExit(code)


if __name__ == "__main__":
    main()
