from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from catalog.store import CatalogStore


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[CatalogStore]:
    catalog = CatalogStore.open(tmp_path / "data" / "catalog.db")
    try:
        yield catalog
    finally:
        catalog.close()
