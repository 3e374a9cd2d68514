import pytest, os, sys

# Ensure the app module is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vericharm import Settings
from vericharm.config import invalidate_config_cache

from app import main
from app.main import _startup

ADMIN_TOKEN = "test-admin"


def make_settings(tmp_path, **overrides):
    values = dict(
        ledger_backend="memory",
        signer_backend="ephemeral",
        prover_backend="local",
        trust_directory_path=str(tmp_path / "trust" / "trust_directory.json"),
        indexer_url="",
        burn_lock_days=0,
        admin_token=ADMIN_TOKEN,
        mutation_rpm=1000,
        query_rpm=1000,
        log_level="",
    )
    values.update(overrides)
    return Settings(**values)


# Fresh services (empty ledger, empty trust directory) for each test
@pytest.fixture(autouse=True)
def _reset_services(tmp_path):
    invalidate_config_cache()
    _startup(make_settings(tmp_path))
    yield
    if main.SERVICES is not None:
        main.SERVICES.close()
        main.SERVICES = None


@pytest.fixture
def restart(tmp_path):
    """Re-run startup with setting overrides, keeping tmp paths."""
    def _restart(**overrides):
        invalidate_config_cache()
        _startup(make_settings(tmp_path, **overrides))
        return main.SERVICES
    return _restart
