import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from portal.diagnostics import run_gmail_watch_diagnostics


def main() -> None:
    load_dotenv()
    results = run_gmail_watch_diagnostics()
    raise SystemExit(0 if all(result.ok for result in results) else 1)


if __name__ == "__main__":
    main()
