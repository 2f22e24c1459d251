import types

import pytest
import pytest_asyncio

from lead_autosync.persistence import Persistence


def _noop(*_args, **_kwargs):
    return None


@pytest.fixture
def silent_logger():
    return types.SimpleNamespace(
        debug=_noop, info=_noop, warning=_noop, error=_noop, exception=_noop
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    persistence = Persistence(str(tmp_path / "leads.db"))
    await persistence.init_db()
    return persistence
