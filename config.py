#!/usr/bin/env python3
import os
import argparse
from typing import NamedTuple
import constants

class AppConfig(NamedTuple):
    """Typed configuration object."""
    db_path: str
    telegram_bot_token: str | None
    gemini_api_key: str | None
    ai_recommendations_enabled: bool
    sideshift_api_key: str | None
    sideshift_affiliate_id: str | None
    min_tvl_usd: float
    catalog_limit: int
    default_risk_tolerance: int
    batch_delay_seconds: float
    monitor_interval: int
    gas_cost_estimate_usd: float
    starter_monthly_limit: int
    vault_contract_address: str | None
    vault_rpc_url: str
    upgrade_url: str
    show_recommendations: str | None
    log_level: str


def load_config() -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Telegram bot that generates and executes DeFi yield rebalancing recommendations.",
        epilog="Example: ./main.py --min-tvl 5000000 --monitor-interval 300"
    )
    parser.add_argument('--db-path', type=str, default='data/yieldshift.db', help='SQLite database path (default: data/yieldshift.db).')
    parser.add_argument('--min-tvl', type=float, default=1_000_000.0, help='Minimum pool TVL in USD considered for recommendations (default: 1000000).')
    parser.add_argument('--catalog-limit', type=int, default=50, help='Number of top-APY pools fetched per generation (default: 50).')
    parser.add_argument('--default-risk-tolerance', type=int, default=50, help='Risk tolerance (0-100) used when /generate has no argument (default: 50).')
    parser.add_argument('--batch-delay', type=float, default=constants.BATCH_EXECUTION_DELAY_SECONDS, help='Seconds to wait between batch executions (default: 1.0).')
    parser.add_argument('--monitor-interval', type=int, default=300, help='Seconds between shift order status polls (default: 300).')
    parser.add_argument('--gas-cost-estimate', type=float, default=constants.ESTIMATED_REBALANCE_GAS_COST_USD, help='Estimated USD cost of one rebalance (default: 50).')
    parser.add_argument('--starter-monthly-limit', type=int, default=constants.STARTER_MONTHLY_REBALANCE_LIMIT, help='Monthly executions allowed on the starter plan (default: 4).')
    parser.add_argument('--disable-ai-recommendations', action='store_true', help='Always use the rule-based recommendation generator.')
    parser.add_argument('--show-recommendations', type=str, metavar='USER_ID', help='Display pending recommendations for a Telegram user id and exit.')
    parser.add_argument('--log-level', type=str, default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level (default: INFO).')

    args = parser.parse_args()

    if not 0 <= args.default_risk_tolerance <= 100:
        parser.error('--default-risk-tolerance must be between 0 and 100.')

    # Load from environment
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    gemini_api_key = os.environ.get(constants.GEMINI_API_KEY_ENV_VAR)
    sideshift_api_key = os.environ.get(constants.SIDESHIFT_API_KEY_ENV_VAR)
    sideshift_affiliate_id = os.environ.get(constants.SIDESHIFT_AFFILIATE_ID_ENV_VAR)
    vault_contract_address = os.environ.get(constants.VAULT_CONTRACT_ADDRESS_ENV_VAR)
    vault_rpc_url = os.environ.get(constants.BASE_RPC_URL_ENV_VAR) or constants.DEFAULT_BASE_RPC_URL
    frontend_url = os.environ.get(constants.FRONTEND_URL_ENV_VAR) or constants.DEFAULT_FRONTEND_URL

    ai_env = os.environ.get(constants.AI_RECOMMENDATIONS_ENABLED_ENV_VAR)
    ai_recommendations_enabled = not args.disable_ai_recommendations
    if ai_env is not None:
        ai_recommendations_enabled = ai_env.lower() not in {"0", "false", "no", "off"}

    if not args.show_recommendations and not telegram_bot_token:
        print(f"{constants.C_RED}{constants.TELEGRAM_BOT_TOKEN_ENV_VAR} environment variable not set. Create a bot with @BotFather.{constants.C_RESET}")
        exit(1)

    return AppConfig(
        db_path=args.db_path,
        telegram_bot_token=telegram_bot_token,
        gemini_api_key=gemini_api_key,
        ai_recommendations_enabled=ai_recommendations_enabled,
        sideshift_api_key=sideshift_api_key,
        sideshift_affiliate_id=sideshift_affiliate_id,
        min_tvl_usd=args.min_tvl,
        catalog_limit=args.catalog_limit,
        default_risk_tolerance=args.default_risk_tolerance,
        batch_delay_seconds=args.batch_delay,
        monitor_interval=args.monitor_interval,
        gas_cost_estimate_usd=args.gas_cost_estimate,
        starter_monthly_limit=args.starter_monthly_limit,
        vault_contract_address=vault_contract_address,
        vault_rpc_url=vault_rpc_url,
        upgrade_url=f"{frontend_url.rstrip('/')}/pricing",
        show_recommendations=args.show_recommendations,
        log_level=args.log_level,
    )
