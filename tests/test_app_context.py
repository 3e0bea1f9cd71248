from types import SimpleNamespace
from unittest.mock import patch

import pytest

from ticket_mirror.app import AppContext, get_app_context
from ticket_mirror.config import Settings


@pytest.fixture
def clean_context():
    get_app_context.cache_clear()
    yield
    get_app_context.cache_clear()


@patch("ticket_mirror.app.load_settings")
def test_app_context_initialization(mock_load_settings, clean_context, tmp_path):
    settings = Settings.model_validate(
        {
            "storage": {"sqlite_path": str(tmp_path / "mirror.sqlite")},
            "remote": {"base_url": "https://example.service-now.com"},
            "gate": {"failure_threshold": 2},
            "sync": {"max_workers": 2, "actor": "nightly"},
        }
    )
    mock_load_settings.return_value = settings

    ctx = get_app_context()

    assert isinstance(ctx, AppContext)
    assert ctx.settings is settings
    assert ctx.gate.config.failure_threshold == 2
    assert ctx.rules.audit_collection == "record_audit_log"
    assert ctx.reconciler.options.window.total_seconds() == 3600
    assert ctx.reconciler.options.batch_size == 100
    assert get_app_context() is ctx
    ctx.store.close()


@patch("ticket_mirror.app.load_settings")
@patch("ticket_mirror.app.load_rules")
def test_app_context_uses_rules_path(mock_load_rules, mock_load_settings, clean_context, tmp_path):
    settings = Settings.model_validate(
        {
            "storage": {"sqlite_path": str(tmp_path / "mirror.sqlite")},
            "remote": {"base_url": "https://example.service-now.com"},
            "rules": {"path": "/etc/rules.yaml"},
        }
    )
    mock_load_settings.return_value = settings
    mock_load_rules.side_effect = FileNotFoundError("Rules file not found: /etc/rules.yaml")

    with pytest.raises(FileNotFoundError):
        get_app_context()
    mock_load_rules.assert_called_once_with("/etc/rules.yaml")


@patch("ticket_mirror.app.load_settings")
def test_app_context_requires_remote_url(mock_load_settings, clean_context):
    mock_load_settings.return_value = SimpleNamespace(
        rules=SimpleNamespace(path=None),
        remote=Settings().remote,
    )

    with pytest.raises(RuntimeError, match="REMOTE_BASE_URL"):
        get_app_context()
