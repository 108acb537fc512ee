import pytest
from sqlalchemy import text

from fiscal_receipts.config.settings import settings
from fiscal_receipts.db.engine import get_session

pytestmark = pytest.mark.integration


@pytest.mark.skipif(not settings.database_url, reason="DATABASE_URL not set (via .env or env var)")
def test_can_connect_to_database():
    with get_session() as s:
        assert s.execute(text("SELECT 1")).scalar_one() == 1
