import logging

from backend.app.core.log_config import configure_logging
from backend.app.core.settings import CRON_SCHEDULE, CRON_TIMEZONE, Settings


def test_configure_logging_quiets_http_client():
    configure_logging("debug")

    assert logging.getLogger("httpx").level == logging.WARNING


def test_settings_defaults():
    settings = Settings()

    assert CRON_SCHEDULE == "0 7 * * *"
    assert CRON_TIMEZONE == "America/New_York"
    assert settings.concurrency >= 1
    assert settings.run_lock_stale_minutes > 0
    assert Settings(concurrency=5, proxy_list=["http://p1"]).proxy_list == ["http://p1"]
