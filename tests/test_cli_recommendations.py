import sys
from datetime import datetime, timezone

import pytest

import main
from storage.models import RecommendationRecord, RecommendationStatus, UserRecord


class FakeRepository:
    def __init__(self, records):
        self.records = records
        self.resolved = []
        self.closed = False

    async def resolve_user(self, external_id):
        self.resolved.append(external_id)
        return UserRecord(id=3, external_id=external_id, subscription_tier="starter", created_at=datetime.now(timezone.utc))

    async def fetch_pending_recommendations(self, user_id):
        return self.records

    async def close(self):
        self.closed = True


def make_record():
    return RecommendationRecord(
        id=7,
        user_id=3,
        from_pool_id=None,
        from_protocol=None,
        to_pool_id="pool-usdc",
        to_protocol="morpho-blue",
        asset_symbol="USDC",
        from_asset_symbol=None,
        amount="1000",
        current_apy=None,
        target_apy=8.25,
        net_gain_usd_per_year=82.5,
        risk_score=2,
        reason="Top stablecoin yield",
        status=RecommendationStatus.PENDING,
        created_at=datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
        executed_at=None,
        shift_id=None,
    )


@pytest.fixture
def reset_sys_argv():
    original = sys.argv.copy()
    yield
    sys.argv = original


@pytest.mark.usefixtures("reset_sys_argv")
def test_show_recommendations_cli_outputs_table(monkeypatch, capsys):
    repository = FakeRepository([make_record()])
    monkeypatch.setattr(main, "SQLiteRepository", lambda db_path: repository)
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)

    sys.argv = ["prog", "--show-recommendations", "555"]
    main.main()

    output = capsys.readouterr().out
    assert "Pending recommendations for user 555" in output
    assert "morpho-blue" in output
    assert "(new deposit)" in output
    assert "8.25%" in output
    assert repository.resolved == ["555"]
    assert repository.closed is True


@pytest.mark.usefixtures("reset_sys_argv")
def test_show_recommendations_cli_empty(monkeypatch, capsys):
    monkeypatch.setattr(main, "SQLiteRepository", lambda db_path: FakeRepository([]))

    sys.argv = ["prog", "--show-recommendations", "555"]
    main.main()

    assert "No pending recommendations found." in capsys.readouterr().out
