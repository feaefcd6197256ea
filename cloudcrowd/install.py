"""Install configuration templates into a new configuration directory."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

logger = logging.getLogger("cloudcrowd.install")

TEMPLATES_DIR = Path(__file__).parent / "templates"
INSTALL_FILES = (
    ("config.example.yml", "config.yml"),
    ("database.example.yml", "database.yml"),
    ("actions", "actions"),
)


def install_configuration(install_path: Path, templates_dir: Path = TEMPLATES_DIR) -> list[tuple[Path, bool]]:
    """Copy templates into install_path; existing destinations are left untouched.

    Returns (destination, installed) pairs in install order.
    """
    install_path.mkdir(parents=True, exist_ok=True)
    results: list[tuple[Path, bool]] = []
    for source_name, dest_name in INSTALL_FILES:
        source = templates_dir / source_name
        dest = install_path / dest_name
        if dest.exists():
            logger.info("Skipping existing %s", dest)
            results.append((dest, False))
            continue
        if source.is_dir():
            shutil.copytree(source, dest, ignore=shutil.ignore_patterns("__pycache__"))
        else:
            shutil.copy(source, dest)
        logger.info("Installed %s", dest)
        results.append((dest, True))
    return results
