"""Local runner for the soma-mirror service with src/ layout.

Usage: uv run python run_app.py
"""

from __future__ import annotations

import sys
from pathlib import Path


def _setup_logging(logs_dir: Path) -> None:
    import faulthandler
    import logging

    logs_dir.mkdir(exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[
            logging.FileHandler(logs_dir / "app.log", encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    fh = (logs_dir / "faulthandler.log").open("w")
    faulthandler.enable(fh)


def main() -> None:
    # Ensure src/ is on sys.path so `import somamirror` resolves
    root = Path(__file__).resolve().parent
    src = root / "src"
    if src.exists():
        sys.path.insert(0, str(src))
    _setup_logging(root / "logs")
    from somamirror.service import main as service_main  # type: ignore

    service_main()


if __name__ == "__main__":
    main()
