from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from bot.handlers import execute_command, generate_command, vault_command
from services.entitlements import EntitlementPolicy
from services.recommendation_service import RecommendationService
from storage.models import UserRecord


def make_update(user_id=42):
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_html = AsyncMock()
    update.message.reply_text = AsyncMock()
    return update


def make_context(tier="free", args=None, **bot_data):
    repository = AsyncMock()
    repository.resolve_user.return_value = UserRecord(
        id=1, external_id="42", subscription_tier=tier, created_at=datetime.now(timezone.utc)
    )
    repository.count_history_for_month.return_value = 0
    policy = EntitlementPolicy(repository, upgrade_url="https://example.test/pricing")
    service = RecommendationService(repository, AsyncMock(), AsyncMock(), policy)
    data = {
        "repository": repository,
        "recommendation_service": service,
        "config": SimpleNamespace(default_risk_tolerance=50),
    }
    data.update(bot_data)
    return SimpleNamespace(application=SimpleNamespace(bot_data=data), args=args or [])


@pytest.mark.asyncio
async def test_denied_execution_shows_upgrade_prompt():
    update = make_update()
    context = make_context(tier="free", args=["5", "0xwallet"])

    await execute_command(update, context)

    message = update.message.reply_html.await_args.args[0]
    assert "Upgrade required" in message
    assert "Required plan: <code>starter</code>" in message
    assert 'href="https://example.test/pricing"' in message
    context.application.bot_data["repository"].resolve_user.assert_awaited_once_with("42")


@pytest.mark.asyncio
async def test_execute_usage_message_for_bad_arguments():
    update = make_update()

    await execute_command(update, make_context(args=["abc"]))

    update.message.reply_text.assert_awaited_once()
    assert "Usage" in update.message.reply_text.await_args.args[0]


@pytest.mark.asyncio
async def test_generate_rejects_non_numeric_risk():
    update = make_update()

    await generate_command(update, make_context(tier="starter", args=["high"]))

    assert "Usage" in update.message.reply_text.await_args.args[0]


@pytest.mark.asyncio
async def test_vault_not_configured():
    update = make_update()

    await vault_command(update, make_context(vault_reader=None))

    update.message.reply_text.assert_awaited_once_with("Vault not deployed yet.")
