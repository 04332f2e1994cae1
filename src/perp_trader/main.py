"""CLI 入口模块 - Perp Trader 命令行接口。"""

import asyncio
import json
import sys
import time
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import click

from perp_trader import __version__
from perp_trader.ai.schemas import Decision
from perp_trader.config import Settings, get_settings
from perp_trader.data.account import format_account_performance
from perp_trader.pipeline import TradingAgent, build_agent
from perp_trader.symbols import to_base_symbol
from perp_trader.types import CycleResult
from perp_trader.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Perp Trader - LLM 驱动的加密货币永续合约交易代理。

    每个循环读取行情与账户快照，交给决策模型，再经风控与执行服务下单。
    """
    if version:
        click.echo(f"perp-trader version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _prepare(settings: Settings) -> None:
    """确保目录存在并校验实盘配置。"""
    logger = get_logger("perp_trader.main")
    settings.ensure_directories()

    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置必要的 API 密钥",
            )
            sys.exit(1)


async def _run_once(settings: Settings, dry_run: bool) -> CycleResult:
    agent = await build_agent(settings)
    try:
        return await agent.run_decision_cycle(dry_run=dry_run)
    finally:
        await agent.close()


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，只记录决策不下单",
)
def once(dry_run: bool) -> None:
    """执行单次决策循环。

    行情快照 + 账户快照 → 决策模型 → 风控 → 执行 → 记录
    """
    setup_logging()
    logger = get_logger("perp_trader.main")
    settings = get_settings()
    _prepare(settings)

    logger.info(
        "starting_single_run",
        mode=settings.mode.value,
        symbols=settings.symbols,
        dry_run=dry_run,
        timestamp=datetime.now().isoformat(),
    )

    try:
        result = asyncio.run(_run_once(settings, dry_run))
        logger.info(
            "run_completed",
            status=result.status,
            elapsed_ms=round(result.elapsed_ms, 2),
            decisions=len(result.decisions),
            orders=len(result.orders),
            warnings=result.warnings,
        )

    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)


async def _run_loop(
    settings: Settings,
    interval_sec: int,
    metrics_interval_sec: int,
    dry_run: bool,
) -> NoReturn:
    """在同一个 agent 上交替执行决策循环和账户指标快照。"""
    logger = get_logger("perp_trader.main")
    agent = await build_agent(settings)
    iteration = 0
    next_cycle = time.monotonic()
    next_metrics = time.monotonic()

    try:
        while True:
            now = time.monotonic()

            if now >= next_metrics:
                try:
                    await agent.run_metrics_snapshot()
                except Exception as e:
                    logger.exception("metrics_snapshot_failed", error=str(e))
                next_metrics = now + metrics_interval_sec

            if now >= next_cycle:
                iteration += 1
                logger.info(
                    "loop_iteration_start",
                    iteration=iteration,
                    timestamp=datetime.now().isoformat(),
                )
                try:
                    result = await agent.run_decision_cycle(dry_run=dry_run)
                    logger.info(
                        "loop_iteration_completed",
                        iteration=iteration,
                        status=result.status,
                        elapsed_ms=round(result.elapsed_ms, 2),
                        decisions=len(result.decisions),
                        orders=len(result.orders),
                        warnings=result.warnings,
                    )
                except Exception as e:
                    logger.exception(
                        "loop_iteration_failed",
                        iteration=iteration,
                        error=str(e),
                    )
                    # 继续循环，不因单次失败而退出
                next_cycle = now + interval_sec

            # 等待下一次任务
            wait_seconds = max(0.0, min(next_cycle, next_metrics) - time.monotonic())
            logger.debug("waiting_next_iteration", wait_seconds=round(wait_seconds, 1))
            await asyncio.sleep(wait_seconds)
    finally:
        logger.info("loop_stopped", total_iterations=iteration)
        await agent.close()


@cli.command()
@click.option(
    "--interval-min",
    "-i",
    type=int,
    default=5,
    help="决策循环间隔（分钟）",
)
@click.option(
    "--metrics-interval-sec",
    "-m",
    type=int,
    default=20,
    help="账户指标快照间隔（秒）",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，只记录决策不下单",
)
def loop(interval_min: int, metrics_interval_sec: int, dry_run: bool) -> NoReturn:
    """循环执行决策循环和指标快照。

    使用 Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("perp_trader.main")
    settings = get_settings()
    _prepare(settings)

    logger.info(
        "starting_loop",
        mode=settings.mode.value,
        interval_min=interval_min,
        metrics_interval_sec=metrics_interval_sec,
        dry_run=dry_run,
    )

    try:
        asyncio.run(_run_loop(settings, interval_min * 60, metrics_interval_sec, dry_run))
    except KeyboardInterrupt:
        logger.info("loop_interrupted", message="User stopped loop")
        sys.exit(0)


async def _with_agent(settings: Settings, action: Any) -> Any:
    agent: TradingAgent = await build_agent(settings)
    try:
        return await action(agent)
    finally:
        await agent.close()


@cli.command()
def metrics() -> None:
    """记录一次账户指标快照并输出账户表现。"""
    setup_logging()
    logger = get_logger("perp_trader.main")
    settings = get_settings()
    _prepare(settings)

    try:
        snapshot = asyncio.run(_with_agent(settings, lambda agent: agent.run_metrics_snapshot()))
    except Exception as e:
        logger.exception("metrics_failed", error=str(e))
        sys.exit(1)
    click.echo(format_account_performance(snapshot))


@cli.command()
def positions() -> None:
    """以 JSON 输出当前持仓（含止盈止损计划）。"""
    setup_logging()
    settings = get_settings()
    _prepare(settings)

    try:
        snapshot = asyncio.run(_with_agent(settings, lambda agent: agent.account_snapshot()))
    except Exception as e:  # noqa: BLE001 - reported as a structured body.
        _echo_json({"success": False, "error": str(e)})
        return
    _echo_json(
        {
            "success": True,
            "account_value": snapshot.current_account_value,
            "available_cash": snapshot.available_cash,
            "positions": [asdict(position) for position in snapshot.positions],
        }
    )


@cli.command()
@click.argument("symbol")
def close(symbol: str) -> None:
    """平掉指定币种的持仓。"""
    setup_logging()
    settings = get_settings()
    _prepare(settings)

    async def _close(agent: TradingAgent) -> dict[str, Any]:
        decision = Decision(
            signal="close",
            coin=to_base_symbol(symbol, settings.quote_currency),
            confidence=1.0,
            justification="manual close from cli",
        )
        result = await agent.execution.execute_decision(decision, available_capital=0.0)
        return asdict(result)

    try:
        body = asyncio.run(_with_agent(settings, _close))
    except Exception as e:  # noqa: BLE001 - reported as a structured body.
        body = {"success": False, "error": str(e)}
    _echo_json(body)


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Perp Trader - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Symbols: {', '.join(settings.symbols)} (quote {settings.quote_currency})")
    click.echo(f"   Oracle mode: {settings.oracle_mode.value}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    binance_status = "[OK] Configured" if settings.binance_api_key else "[--] Not configured"
    openrouter_status = "[OK] Configured" if settings.openrouter_api_key else "[--] Not configured"
    click.echo(f"   Binance API: {binance_status}")
    click.echo(f"   OpenRouter API: {openrouter_status}")
    click.echo(f"   Binance Testnet: {'Yes' if settings.binance_testnet else 'No'}")
    click.echo(f"   LLM Model: {settings.openrouter_model}")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Risk gate: {'enforced' if settings.risk_gate_enabled else 'log only'}")
    click.echo(f"   Max risk per trade: {settings.max_risk_per_trade:.2%}")
    click.echo(f"   Max position size: {settings.max_position_size_usd:.2f} USD")
    click.echo(f"   Max leverage: {settings.max_leverage}x")
    click.echo(f"   Max daily loss: {settings.max_daily_loss:.2f} USD")
    click.echo(f"   Max total risk: {settings.max_total_risk:.2%}")
    click.echo(
        f"   ATR stop / target: {settings.stop_loss_atr_multiplier} / "
        f"{settings.take_profit_atr_multiplier} ATR"
    )
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require Binance API keys")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("perp_trader.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包（导入名, 说明）
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("numpy", "Numerical computing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("binance", "Binance futures client (python-binance)"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


def _echo_json(body: dict[str, Any]) -> None:
    click.echo(json.dumps(body, ensure_ascii=False, indent=2, default=str))


# 支持 python -m perp_trader.main 调用
if __name__ == "__main__":
    cli()
