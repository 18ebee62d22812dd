# bot/handlers.py
from html import escape
from typing import Optional

from telegram import Update
from telegram.ext import ContextTypes

from constants import C_RED, C_RESET
from services.rebalance_executor import ErrorKind
from services.recommendation_service import RecommendationService, ServiceResult
from storage.models import RecommendationRecord, UserRecord

# --- Helpers ---

async def _resolve_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> UserRecord:
    repository = context.application.bot_data['repository']
    return await repository.resolve_user(str(update.effective_user.id))


def _service(context: ContextTypes.DEFAULT_TYPE) -> RecommendationService:
    return context.application.bot_data['recommendation_service']


def _parse_id(value: str) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _format_apy(value: Optional[float]) -> str:
    return f"{value:.2f}%" if value is not None else "-"


def format_recommendation(rec: RecommendationRecord) -> str:
    if rec.from_protocol:
        move = f"{escape(rec.from_protocol)} ({_format_apy(rec.current_apy)}) → {escape(rec.to_protocol)}"
    else:
        move = f"New deposit → {escape(rec.to_protocol)}"
    return (
        f"<b>#{rec.id}</b> {move}\n"
        f"   Asset: <code>{escape(rec.amount)} {escape(rec.asset_symbol)}</code>\n"
        f"   Target APY: {_format_apy(rec.target_apy)} | Gain: ${rec.net_gain_usd_per_year:,.2f}/yr | Risk: {rec.risk_score}/10\n"
        f"   <i>{escape(rec.reason)}</i>"
    )


def format_denied(result: ServiceResult) -> str:
    detail = result.detail
    lines = ["🔒 <b>Upgrade required</b>", escape(result.message or "")]
    lines.append(f"Current plan: <code>{detail.get('current_plan')}</code>")
    if detail.get('required_plan'):
        lines.append(f"Required plan: <code>{detail['required_plan']}</code>")
    if 'limit' in detail:
        lines.append(f"Used this month: {detail['used']}/{detail['limit']}")
    if detail.get('upgrade_url'):
        lines.append(f'<a href="{escape(detail["upgrade_url"])}">Upgrade your plan</a>')
    return "\n".join(lines)


def format_failure(result: ServiceResult) -> str:
    if result.error_kind is ErrorKind.ENTITLEMENT_DENIED:
        return format_denied(result)
    if result.error_kind is ErrorKind.MANUAL_ACTION_REQUIRED:
        return f"✋ {escape(result.message or '')}"
    return f"⚠️ {escape(result.message or 'Request failed')}"

# --- Command Handlers ---

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays a help message with all available commands."""
    help_text = """
    <b>Welcome to the YieldShift Bot!</b>

    This bot finds better DeFi yields for your positions and rebalances them through SideShift.

    <b><u>Available Commands:</u></b>
    /plan - Show your plan and this month's usage
    /recommendations - List pending recommendations
    /generate [risk] - Generate new recommendations (risk 0-100)
    /simulate &lt;id&gt; - Estimate cost and breakeven of a recommendation
    /execute &lt;id&gt; &lt;wallet&gt; - Execute a recommendation
    /batch &lt;wallet&gt; &lt;id&gt; [id...] - Execute several recommendations
    /reject &lt;id&gt; - Dismiss a recommendation
    /monitor &lt;shift_id&gt; - Refresh the status of a shift
    /vault [address] - Show vault statistics or your vault position
    /help - Show this help message
    """
    await update.message.reply_html(help_text)

async def plan_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Shows the user's subscription plan and monthly execution usage."""
    user = await _resolve_user(update, context)
    result = await _service(context).usage_summary(user)
    usage = result.data

    if usage['limit'] is not None:
        executions = f"{usage['used']}/{usage['limit']} this month"
    else:
        executions = f"{usage['used']} this month" + (" (unlimited)" if usage['can_execute'] else "")

    message = (
        f"<b>📋 Your Plan</b>\n"
        f"Plan: <code>{usage['plan']}</code>\n"
        f"Executions: {executions}\n"
        f"Recommendations: {'✅' if usage['can_view_recommendations'] else '🚫'}\n"
        f"Execution: {'✅' if usage['can_execute'] else '🚫'}\n"
        f"Batch execution: {'✅' if usage['can_batch'] else '🚫'}"
    )
    await update.message.reply_html(message)

async def recommendations_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Lists the user's pending recommendations, best first."""
    user = await _resolve_user(update, context)
    result = await _service(context).list_recommendations(user)
    if not result.ok:
        await update.message.reply_html(format_failure(result))
        return

    if not result.data:
        await update.message.reply_text("No pending recommendations. Use /generate to create some.")
        return

    lines = ["<b>💡 Pending Recommendations</b>\n"]
    lines.extend(format_recommendation(rec) for rec in result.data)
    await update.message.reply_html("\n\n".join(lines))

async def generate_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Regenerates recommendations, replacing any that are still pending."""
    config = context.application.bot_data['config']
    risk_tolerance = config.default_risk_tolerance
    if context.args:
        try:
            risk_tolerance = int(context.args[0])
        except ValueError:
            await update.message.reply_text("Usage: /generate [risk tolerance 0-100]")
            return

    user = await _resolve_user(update, context)
    await update.message.reply_text("Analyzing yields, this can take a moment...")
    try:
        result = await _service(context).generate_recommendations(user, risk_tolerance)
    except Exception as e:
        print(f"{C_RED}Error in /generate command: {e}{C_RESET}")
        await update.message.reply_text("An error occurred while generating recommendations.")
        return

    if not result.ok:
        await update.message.reply_html(format_failure(result))
        return

    if not result.data:
        await update.message.reply_text("No better yields found for your positions right now.")
        return

    lines = [f"<b>💡 {len(result.data)} New Recommendation(s)</b> (risk tolerance {risk_tolerance})\n"]
    lines.extend(format_recommendation(rec) for rec in result.data)
    await update.message.reply_html("\n\n".join(lines))

async def simulate_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Shows estimated cost, gain and breakeven for one recommendation."""
    recommendation_id = _parse_id(context.args[0]) if context.args else None
    if recommendation_id is None:
        await update.message.reply_text("Usage: /simulate <recommendation id>")
        return

    user = await _resolve_user(update, context)
    result = await _service(context).simulate_recommendation(user, recommendation_id)
    if not result.ok:
        await update.message.reply_html(format_failure(result))
        return

    simulation = result.data
    breakeven = f"{simulation.breakeven_days} days" if simulation.breakeven_days is not None else "never"
    message = (
        f"<b>🧮 Simulation for #{recommendation_id}</b>\n"
        f"Estimated cost: ${simulation.estimated_cost_usd:,.2f}\n"
        f"Annual gain: ${simulation.estimated_annual_gain:,.2f}\n"
        f"Daily gain: ${simulation.estimated_daily_gain:,.2f}\n"
        f"Breakeven: {breakeven}"
    )
    await update.message.reply_html(message)

async def execute_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Executes a recommendation through a SideShift fixed-rate order."""
    if not context.args or len(context.args) < 2 or _parse_id(context.args[0]) is None:
        await update.message.reply_text("Usage: /execute <recommendation id> <destination wallet>")
        return

    recommendation_id = _parse_id(context.args[0])
    user = await _resolve_user(update, context)
    result = await _service(context).execute_recommendation(user, recommendation_id, context.args[1])
    if not result.ok:
        await update.message.reply_html(format_failure(result))
        return

    order = result.data.order
    message = (
        f"<b>✅ Rebalance started for #{recommendation_id}</b>\n"
        f"Shift ID: <code>{escape(order.id)}</code>\n"
        f"Send <code>{escape(order.deposit_amount or '')} {escape(order.deposit_coin or '')}</code> to:\n"
        f"<code>{escape(order.deposit_address or '')}</code>\n"
        f"You will receive <code>{escape(order.settle_amount or '')} {escape(order.settle_coin or '')}</code>.\n"
        f"Track it with /monitor {escape(order.id)}"
    )
    await update.message.reply_html(message)

async def batch_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Executes several recommendations sequentially and reports per-item results."""
    if not context.args or len(context.args) < 2:
        await update.message.reply_text("Usage: /batch <destination wallet> <id> [id...]")
        return

    wallet_address = context.args[0]
    recommendation_ids = [_parse_id(arg) for arg in context.args[1:]]
    if any(rec_id is None for rec_id in recommendation_ids):
        await update.message.reply_text("Recommendation ids must be positive integers.")
        return

    user = await _resolve_user(update, context)
    result = await _service(context).batch_execute(user, recommendation_ids, wallet_address)
    if not result.ok:
        await update.message.reply_html(format_failure(result))
        return

    batch = result.data
    lines = [f"<b>📦 Batch finished:</b> {batch.successful} succeeded, {batch.failed} failed\n"]
    for item in batch.results:
        if item.success:
            lines.append(f"✅ #{item.recommendation_id} shift <code>{escape(item.order.id)}</code>")
        else:
            lines.append(f"❌ #{item.recommendation_id} {escape(item.message or '')}")
    await update.message.reply_html("\n".join(lines))

async def reject_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    recommendation_id = _parse_id(context.args[0]) if context.args else None
    if recommendation_id is None:
        await update.message.reply_text("Usage: /reject <recommendation id>")
        return

    user = await _resolve_user(update, context)
    result = await _service(context).reject_recommendation(user, recommendation_id)
    if not result.ok:
        await update.message.reply_html(format_failure(result))
        return
    await update.message.reply_text(f"Recommendation #{recommendation_id} dismissed.")

async def monitor_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Refreshes one shift's status from SideShift."""
    if not context.args:
        await update.message.reply_text("Usage: /monitor <shift id>")
        return

    user = await _resolve_user(update, context)
    result = await _service(context).monitor_shift(user, context.args[0])
    if not result.ok:
        await update.message.reply_html(format_failure(result))
        return

    order = result.data
    await update.message.reply_html(
        f"<b>🔄 Shift <code>{escape(order.id)}</code></b>\nStatus: <code>{escape(order.status)}</code>"
    )

async def vault_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays vault statistics, or one address's vault position."""
    vault_reader = context.application.bot_data.get('vault_reader')
    if vault_reader is None:
        await update.message.reply_text("Vault not deployed yet.")
        return

    try:
        if context.args:
            position = await vault_reader.get_user_position(context.args[0])
            message = (
                f"<b>🏦 Vault Position</b>\n"
                f"Address: <code>{position.address}</code>\n"
                f"Shares: {position.shares:,.4f}\n"
                f"Deposited: ${position.deposited:,.2f}\n"
                f"Balance: ${position.current_balance:,.2f}\n"
                f"Yield: ${position.yield_earned:,.2f} ({position.estimated_return_pct:.2f}%)"
            )
        else:
            stats = await vault_reader.get_vault_stats()
            message = (
                f"<b>🏦 Vault Statistics</b>\n"
                f"Address: <code>{stats.vault_address}</code>\n"
                f"Total assets: ${stats.total_assets:,.2f}\n"
                f"Total deposited: ${stats.total_deposited:,.2f}\n"
                f"Yield earned: ${stats.total_yield_earned:,.2f}\n"
                f"Share price: {stats.share_price:.6f}"
            )
    except ValueError as e:
        await update.message.reply_text(str(e))
        return
    except Exception as e:
        print(f"{C_RED}Error in /vault command: {e}{C_RESET}")
        await update.message.reply_text("An error occurred while reading the vault contract.")
        return

    await update.message.reply_html(message)
