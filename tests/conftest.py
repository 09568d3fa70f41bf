import shutil
import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def short_tmp():
    # pytest's tmp_path can exceed the AF_UNIX path limit; sockets live here instead.
    path = Path(tempfile.mkdtemp(prefix="mlo-", dir="/tmp" if Path("/tmp").is_dir() else None))
    yield path
    shutil.rmtree(path, ignore_errors=True)
