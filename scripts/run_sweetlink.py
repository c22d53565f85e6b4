#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[sweetlink] host={os.environ.get('SWEETLINK_HOST', '127.0.0.1')} | "
    f"port={os.environ.get('SWEETLINK_PORT', 'auto')} | "
    f"app_port={os.environ.get('SWEETLINK_APP_PORT', 'none')}",
    file=sys.stderr,
)

from sweetlink.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main(["serve", *sys.argv[1:]]))
