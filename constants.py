#!/usr/bin/env python3
from typing import Dict, Tuple

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_RESET = '\033[0m'

# --- API Configuration ---
DEFILLAMA_YIELDS_URL = 'https://yields.llama.fi/pools'
SIDESHIFT_API_BASE_URL = 'https://sideshift.ai/api/v2'
GEMINI_API_URL = 'https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent'
DEFAULT_BASE_RPC_URL = 'https://mainnet.base.org'
DEFAULT_FRONTEND_URL = 'https://app.yieldshift.io'

# --- Environment Variable Names ---
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
GEMINI_API_KEY_ENV_VAR = 'GEMINI_API_KEY'
AI_RECOMMENDATIONS_ENABLED_ENV_VAR = 'AI_RECOMMENDATIONS_ENABLED'
SIDESHIFT_API_KEY_ENV_VAR = 'SIDESHIFT_API_KEY'
SIDESHIFT_AFFILIATE_ID_ENV_VAR = 'SIDESHIFT_AFFILIATE_ID'
VAULT_CONTRACT_ADDRESS_ENV_VAR = 'VAULT_CONTRACT_ADDRESS'
BASE_RPC_URL_ENV_VAR = 'BASE_RPC_URL'
FRONTEND_URL_ENV_VAR = 'FRONTEND_URL'

# --- Subscription Tiers ---
TIER_FREE = 'free'
TIER_STARTER = 'starter'
TIER_PROFESSIONAL = 'professional'
TIER_INSTITUTIONAL = 'institutional'
STARTER_MONTHLY_REBALANCE_LIMIT = 4

# --- Rebalancing Economics ---
# Flat estimate for withdraw + swap + deposit gas, in USD.
ESTIMATED_REBALANCE_GAS_COST_USD = 50.0
MIN_DAYS_TO_BREAKEVEN = 30
BATCH_EXECUTION_DELAY_SECONDS = 1.0

# --- SideShift ---
# Best-effort symbol -> SideShift coin id. Unmapped symbols fall back to the
# lower-cased symbol, which is not guaranteed to be a valid SideShift coin.
SIDESHIFT_COIN_MAP: Dict[str, str] = {
    'ETH': 'eth',
    'WETH': 'eth',
    'BTC': 'btc',
    'WBTC': 'btc',
    'USDC': 'usdcarbitrum',  # Arbitrum USDC for lower fees
    'USDT': 'usdttrc20',
    'DAI': 'dai',
    'MATIC': 'matic',
    'AVAX': 'avax',
    'SOL': 'sol',
    'ATOM': 'atom',
    'DOT': 'dot',
    'LINK': 'link',
    'UNI': 'uni',
    'AAVE': 'aave',
    'CRV': 'crv',
}

# Gateway statuses after which a shift no longer changes.
SIDESHIFT_SETTLED_STATUS = 'settled'
SIDESHIFT_FINAL_STATUSES: Tuple[str, ...] = ('settled', 'refunded', 'expired')

# --- Vault (Base) ---
USDC_DECIMALS = 6
SHARE_DECIMALS = 18
VAULT_ABI = [
    {
        "inputs": [],
        "name": "getVaultStats",
        "outputs": [
            {"name": "totalAssets", "type": "uint256"},
            {"name": "totalShares", "type": "uint256"},
            {"name": "totalDeposited", "type": "uint256"},
            {"name": "totalYieldEarned", "type": "uint256"},
            {"name": "sharePrice", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getUserDeposits",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getUserBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getUserYield",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]
