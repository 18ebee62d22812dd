#!/usr/bin/env python3
import asyncio
import logging
import aiohttp
from telegram import BotCommand
from telegram.ext import Application, CommandHandler, ContextTypes
from telegram.error import TimedOut, TelegramError

import constants
from config import load_config
from analysis.models import RebalancePolicy
from analysis.recommender import RecommendationEngine
from bot.handlers import (
    help_command,
    plan_command,
    recommendations_command,
    generate_command,
    simulate_command,
    execute_command,
    batch_command,
    reject_command,
    monitor_command,
    vault_command,
)
from services.defillama_client import DefiLlamaClient
from services.entitlements import EntitlementPolicy
from services.gemini_client import GeminiClient
from services.rebalance_executor import RebalanceExecutor
from services.recommendation_service import RecommendationService
from services.sideshift_client import SideShiftClient
from services.vault_reader import VaultReader
from storage import SQLiteRepository
from storage.models import RecommendationRecord

async def post_init_hook(application: Application) -> None:
    """A hook that runs after the bot is initialized to set up shared clients and tasks."""
    # Create and store a single, shared aiohttp session
    session = aiohttp.ClientSession(headers={'User-Agent': 'YieldShiftBot/1.0'})
    application.bot_data['http_session'] = session

    config = application.bot_data['config']
    repository = application.bot_data['repository']

    catalog_client = DefiLlamaClient(session)
    gemini_client = None
    if config.ai_recommendations_enabled and config.gemini_api_key:
        gemini_client = GeminiClient(session, config.gemini_api_key)
    else:
        print(f"{constants.C_YELLOW}AI recommendations disabled; using rule-based fallback.{constants.C_RESET}")
    sideshift_client = SideShiftClient(
        session,
        api_key=config.sideshift_api_key,
        affiliate_id=config.sideshift_affiliate_id,
    )

    engine = RecommendationEngine(
        repository,
        catalog_client,
        ai_client=gemini_client,
        policy=RebalancePolicy(min_tvl_usd=config.min_tvl_usd, catalog_limit=config.catalog_limit),
    )
    executor = RebalanceExecutor(
        repository,
        sideshift_client,
        batch_delay_seconds=config.batch_delay_seconds,
        gas_cost_estimate_usd=config.gas_cost_estimate_usd,
    )
    policy = EntitlementPolicy(
        repository,
        starter_monthly_limit=config.starter_monthly_limit,
        upgrade_url=config.upgrade_url,
    )
    application.bot_data['rebalance_executor'] = executor
    application.bot_data['recommendation_service'] = RecommendationService(repository, engine, executor, policy)

    vault_reader = None
    if config.vault_contract_address:
        try:
            vault_reader = VaultReader(config.vault_rpc_url, config.vault_contract_address)
            print(f"{constants.C_GREEN}Vault reader initialised for {config.vault_contract_address}.{constants.C_RESET}")
        except Exception as exc:
            print(f"{constants.C_RED}Failed to initialise vault reader: {exc}. /vault will be unavailable.{constants.C_RESET}")
    application.bot_data['vault_reader'] = vault_reader

    # Set bot commands
    commands = [
        BotCommand("plan", "Show your plan and usage"),
        BotCommand("recommendations", "List pending recommendations"),
        BotCommand("generate", "Generate new recommendations"),
        BotCommand("simulate", "Estimate a rebalance"),
        BotCommand("execute", "Execute a recommendation"),
        BotCommand("batch", "Execute several recommendations"),
        BotCommand("reject", "Dismiss a recommendation"),
        BotCommand("monitor", "Refresh a shift's status"),
        BotCommand("vault", "Show vault statistics"),
        BotCommand("help", "Show help message"),
    ]
    try:
        await application.bot.set_my_commands(commands)
    except (TimedOut, TelegramError) as exc:
        print(
            f"{constants.C_YELLOW}Warning: unable to set Telegram bot commands ({exc})."
            f" Continuing startup without updating commands.{constants.C_RESET}"
        )

    if application.job_queue:
        application.job_queue.run_repeating(
            monitor_open_shifts,
            interval=config.monitor_interval,
            first=config.monitor_interval,
            name="shift-monitor",
        )
    else:
        print(f"{constants.C_YELLOW}Job queue unavailable; open shifts will only refresh via /monitor.{constants.C_RESET}")

async def post_shutdown_hook(application: Application) -> None:
    """A hook that runs on application shutdown to clean up resources."""
    session = application.bot_data.get('http_session')
    if session:
        await session.close()
    repository = application.bot_data.get('repository')
    if repository:
        await repository.close()


async def monitor_open_shifts(context: ContextTypes.DEFAULT_TYPE) -> None:
    executor: RebalanceExecutor | None = context.application.bot_data.get('rebalance_executor')
    if executor is None:
        return
    try:
        refreshed = await executor.monitor_open_shifts()
    except Exception as exc:
        logging.getLogger(__name__).error("Shift monitoring failed: %s", exc)
        return
    if refreshed:
        logging.getLogger(__name__).info("Refreshed %d open shift(s)", refreshed)

def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every Telegram long-poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if config.show_recommendations:
        repository = SQLiteRepository(config.db_path)
        try:
            records = asyncio.run(_load_pending_recommendations(repository, config.show_recommendations))
        finally:
            asyncio.run(repository.close())
        _print_recommendations(records, config.show_recommendations)
        return

    repository = SQLiteRepository(config.db_path)

    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init_hook)
        .post_shutdown(post_shutdown_hook)
        .build()
    )

    # Store config and other shared data
    application.bot_data['config'] = config
    application.bot_data['repository'] = repository

    # Register command handlers
    application.add_handler(CommandHandler("start", help_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("plan", plan_command))
    application.add_handler(CommandHandler("recommendations", recommendations_command))
    application.add_handler(CommandHandler("generate", generate_command))
    application.add_handler(CommandHandler("simulate", simulate_command))
    application.add_handler(CommandHandler("execute", execute_command))
    application.add_handler(CommandHandler("batch", batch_command))
    application.add_handler(CommandHandler("reject", reject_command))
    application.add_handler(CommandHandler("monitor", monitor_command))
    application.add_handler(CommandHandler("vault", vault_command))

    application.run_polling()


async def _load_pending_recommendations(repository: SQLiteRepository, external_id: str) -> list[RecommendationRecord]:
    user = await repository.resolve_user(external_id)
    return await repository.fetch_pending_recommendations(user.id)


def _print_recommendations(records: list[RecommendationRecord], external_id: str) -> None:
    heading = f"Pending recommendations for user {external_id}"
    print(heading)
    print("=" * len(heading))

    if not records:
        print("No pending recommendations found.")
        return

    headers = [
        "ID",
        "Created (UTC)",
        "From",
        "To",
        "Asset",
        "Amount",
        "APY now",
        "APY target",
        "Gain $/yr",
        "Risk",
    ]

    def _format_percent(value: float | None) -> str:
        if value is None:
            return "-"
        return f"{value:.2f}%"

    def _format_row(record: RecommendationRecord) -> list[str]:
        created = record.created_at.strftime("%Y-%m-%d %H:%M:%S") if record.created_at else "N/A"
        return [
            str(record.id),
            created,
            record.from_protocol or "(new deposit)",
            record.to_protocol,
            record.asset_symbol,
            record.amount,
            _format_percent(record.current_apy),
            _format_percent(record.target_apy),
            f"{record.net_gain_usd_per_year:,.2f}",
            str(record.risk_score),
        ]

    rows = [_format_row(rec) for rec in records]
    widths = [len(h) for h in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def _format_line(row: list[str]) -> str:
        return "  ".join(cell.ljust(widths[idx]) for idx, cell in enumerate(row))

    print(_format_line(headers))
    print("  ".join('-' * w for w in widths))
    for row in rows:
        print(_format_line(row))


if __name__ == "__main__":
    main()
