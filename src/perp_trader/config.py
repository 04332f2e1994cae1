"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from perp_trader.symbols import to_base_symbol


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 模拟交易所
    LIVE = "live"  # Binance U 本位合约实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class OracleMode(str, Enum):
    """决策模型调用方式枚举。"""

    SINGLE = "single"  # 每个币种单独调用一次
    MULTI = "multi"  # 一次调用返回全部币种的决策


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="是否使用 Binance 合约测试网")

    # ==================== OpenRouter API ====================
    openrouter_api_key: str = Field(default="", description="OpenRouter API Key")
    openrouter_model: str = Field(
        default="deepseek/deepseek-chat-v3.1",
        description="OpenRouter 模型名称",
    )
    openrouter_timeout: int = Field(default=120, ge=1, description="LLM 调用超时（秒）")
    oracle_mode: OracleMode = Field(default=OracleMode.MULTI, description="决策调用方式: single 或 multi")
    oracle_temperature: float = Field(default=0.1, ge=0.0, le=2.0)

    # ==================== 交易标的 ====================
    symbols: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["BTC", "ETH", "SOL", "BNB", "DOGE", "XRP"],
        description="交易的基础币种列表",
    )
    quote_currency: str = Field(default="USDT", description="计价/结算币种")
    initial_capital: float = Field(default=10_000.0, gt=0, description="收益率基准资金（USD）")

    # ==================== 行情数据 ====================
    intraday_interval: str = Field(default="3m", description="日内 K 线周期")
    longer_term_interval: str = Field(default="4h", description="长周期 K 线周期")
    atr_interval: str = Field(default="1h", description="执行阶段 ATR 使用的 K 线周期")
    candle_limit: int = Field(default=100, ge=35, le=1500)
    series_length: int = Field(default=10, ge=1, le=50)

    # ==================== 风控参数 ====================
    max_position_size_usd: float = Field(
        default=10_000.0,
        gt=0,
        description="单个仓位最大保证金（USD）",
    )
    max_leverage: int = Field(default=20, ge=1, le=125, description="杠杆上限")
    max_risk_per_trade: float = Field(
        default=0.02,
        gt=0.0,
        le=1.0,
        description="单笔最大风险（资金比例）",
    )
    max_daily_loss: float = Field(default=1_000.0, gt=0, description="单日亏损熔断阈值（USD）")
    max_total_risk: float = Field(
        default=0.2,
        gt=0.0,
        le=1.0,
        description="持仓总风险上限（组合比例）",
    )
    min_risk_reward_ratio: float = Field(default=1.0, ge=0.0)
    stop_loss_atr_multiplier: float = Field(default=2.0, gt=0.0, le=20.0)
    take_profit_atr_multiplier: float = Field(default=4.0, gt=0.0, le=20.0)
    risk_gate_enabled: bool = Field(
        default=True,
        description="是否强制执行风控闸门，关闭时仅记录拒绝原因",
    )
    capital_fallback_allocation: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="决策未给出数量时使用的可用资金比例",
    )
    margin_mode: Literal["cross", "isolated"] = Field(default="cross")

    # ==================== 并发 ====================
    venue_timeout: float = Field(default=15.0, gt=0, description="单次交易所调用超时（秒）")
    refresh_capital_between_decisions: bool = Field(
        default=False,
        description="同一循环内每次执行后是否重新读取可用资金",
    )

    # ==================== 纸交易 ====================
    paper_initial_balance: float = Field(default=10_000.0, gt=0)

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 存储配置 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="日志目录",
    )
    metrics_max_points: int = Field(default=100, ge=2, description="账户指标序列最大点数")

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("symbols", mode="before")
    @classmethod
    def parse_symbols(cls, v: str | list[str]) -> list[str]:
        """支持逗号分隔的字符串，统一转为大写。"""
        if isinstance(v, str):
            v = [item for item in v.split(",") if item.strip()]
        return [str(item).strip().upper() for item in v]

    @field_validator("quote_currency")
    @classmethod
    def upper_quote(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def normalize_symbols(self) -> "Settings":
        """交易对统一为基础币种（BTCUSDT、ETH/USDT → BTC、ETH），按原顺序去重。"""
        normalized: list[str] = []
        for item in self.symbols:
            base = str(to_base_symbol(item, self.quote_currency))
            if base not in normalized:
                normalized.append(base)
        self.symbols = normalized
        return self

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """验证实盘模式所需配置。

        Returns:
            缺失的配置项列表，为空表示配置完整。
        """
        missing = []
        if not self.binance_api_key:
            missing.append("BINANCE_API_KEY")
        if not self.binance_api_secret:
            missing.append("BINANCE_API_SECRET")
        if not self.openrouter_api_key:
            missing.append("OPENROUTER_API_KEY")
        return missing


# 全局配置实例（延迟加载）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
