"""Translate signal legs into venue orders."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Literal, TypeVar

from perp_trader.config import Settings
from perp_trader.errors import (
    IncompatiblePositionError,
    InsufficientCapitalError,
    NoOpenPositionError,
    TradingError,
    VenueRejectionError,
)
from perp_trader.symbols import BaseSymbol, to_market_symbol
from perp_trader.utils.logging import get_logger, log_order_execution
from perp_trader.venue.base import (
    CONDITIONAL_ORDER_TYPES,
    OrderParams,
    OrderSide,
    Venue,
    VenueOrder,
    VenuePosition,
    opposite_side,
)

T = TypeVar("T")

Direction = Literal["long", "short"]


@dataclass(slots=True)
class EntryRequest:
    symbol: BaseSymbol
    is_long: bool
    leverage: int
    quantity: float | None = None
    cost: float | None = None
    order_type: Literal["market", "limit"] = "market"
    limit_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    reference_price: float | None = None


@dataclass(slots=True)
class ProtectiveOutcome:
    stop_loss_order_id: str | None = None
    take_profit_order_id: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EntryOutcome:
    order: VenueOrder
    quantity: float
    executed_price: float
    stop_loss_order_id: str | None = None
    take_profit_order_id: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CloseOutcome:
    order: VenueOrder
    closed_quantity: float
    closed_direction: Direction
    entry_price: float
    executed_price: float
    realized_pnl: float
    warnings: list[str] = field(default_factory=list)


def resolve_amount(
    quantity: float | None,
    cost: float | None,
    leverage: float,
    price: float,
) -> float:
    """Explicit quantity verbatim, else notional sizing ``(cost * leverage) / price``."""
    if quantity is not None and quantity > 0:
        return quantity
    if cost is not None and cost > 0:
        if price <= 0:
            raise InsufficientCapitalError("cannot size from cost without a positive price")
        return (cost * leverage) / price
    raise InsufficientCapitalError("Either 'quantity' or 'cost' must be specified")


class OrderTranslator:
    """Venue order legs for entries, protective orders and closes."""

    def __init__(self, venue: Venue, settings: Settings) -> None:
        self._venue = venue
        self._settings = settings
        self._logger = get_logger("perp_trader.exec.orders")

    def market_symbol(self, symbol: str) -> str:
        return to_market_symbol(symbol, self._settings.quote_currency)

    async def current_price(self, symbol: str) -> float:
        ticker = await self._call(self._venue.fetch_ticker(self.market_symbol(symbol)))
        return ticker.last

    async def configure_symbol(self, symbol: str, leverage: int) -> list[str]:
        """Set leverage and margin mode; rejections only produce warnings."""
        market = self.market_symbol(symbol)
        warnings: list[str] = []
        try:
            await self._call(self._venue.set_leverage(leverage, market))
        except VenueRejectionError as exc:
            self._logger.warning("set_leverage_failed", symbol=symbol, leverage=leverage, error=exc.message)
            warnings.append(f"set_leverage_failed: {exc.message}")
        try:
            await self._call(self._venue.set_margin_mode(self._settings.margin_mode, market))
        except VenueRejectionError as exc:
            self._logger.warning("set_margin_mode_failed", symbol=symbol, error=exc.message)
            warnings.append(f"set_margin_mode_failed: {exc.message}")
        return warnings

    async def open_position(self, request: EntryRequest) -> EntryOutcome:
        """Place the entry order, then its reduce-only stop and take-profit."""
        market = self.market_symbol(request.symbol)
        warnings = await self.configure_symbol(request.symbol, request.leverage)

        price = request.reference_price
        if price is None or price <= 0:
            price = await self.current_price(request.symbol)
        amount = resolve_amount(request.quantity, request.cost, request.leverage, price)

        side: OrderSide = "buy" if request.is_long else "sell"
        limit_price = request.limit_price if request.order_type == "limit" else None
        if request.order_type == "limit" and limit_price is None:
            raise VenueRejectionError("Price is required for limit orders")

        order = await self._call(
            self._venue.create_order(market, request.order_type, side, amount, limit_price)
        )
        executed_price = order.average or order.price or price
        log_order_execution(
            self._logger,
            symbol=request.symbol,
            side=side,
            order_type=request.order_type,
            quantity=amount,
            price=executed_price,
            order_id=order.id,
            leverage=request.leverage,
        )

        protective = await self.place_protective_orders(
            request.symbol,
            side,
            amount,
            stop_loss=request.stop_loss,
            take_profit=request.take_profit,
        )
        warnings.extend(protective.warnings)
        return EntryOutcome(
            order=order,
            quantity=amount,
            executed_price=executed_price,
            stop_loss_order_id=protective.stop_loss_order_id,
            take_profit_order_id=protective.take_profit_order_id,
            warnings=warnings,
        )

    async def place_protective_orders(
        self,
        symbol: str,
        entry_side: OrderSide,
        amount: float,
        *,
        stop_loss: float | None,
        take_profit: float | None,
    ) -> ProtectiveOutcome:
        """Opposite-side reduce-only conditional orders; failures become warnings."""
        outcome = ProtectiveOutcome()
        market = self.market_symbol(symbol)
        exit_side = opposite_side(entry_side)
        legs = (
            ("stop_loss", "STOP_MARKET", stop_loss),
            ("take_profit", "TAKE_PROFIT_MARKET", take_profit),
        )
        for label, order_type, trigger in legs:
            if trigger is None:
                continue
            try:
                order = await self._call(
                    self._venue.create_order(
                        market,
                        order_type,  # type: ignore[arg-type]
                        exit_side,
                        amount,
                        None,
                        OrderParams(stop_price=trigger, reduce_only=True),
                    )
                )
            except VenueRejectionError as exc:
                self._logger.warning(
                    f"{label}_order_failed",
                    symbol=symbol,
                    trigger=trigger,
                    error=exc.message,
                )
                outcome.warnings.append(f"{label}_order_failed: {exc.message}")
                continue
            log_order_execution(
                self._logger,
                symbol=symbol,
                side=exit_side,
                order_type=order_type,
                quantity=amount,
                price=trigger,
                order_id=order.id,
                reduce_only=True,
            )
            if label == "stop_loss":
                outcome.stop_loss_order_id = order.id
            else:
                outcome.take_profit_order_id = order.id
        return outcome

    async def replace_protective_orders(
        self,
        symbol: str,
        *,
        stop_loss: float | None,
        take_profit: float | None,
    ) -> ProtectiveOutcome:
        """Swap the standing stop and/or take-profit without touching the position."""
        position = await self.live_position(symbol)
        if position is None:
            return ProtectiveOutcome(warnings=["no_position_to_protect"])

        replaced_types: set[str] = set()
        if stop_loss is not None:
            replaced_types.add("STOP_MARKET")
        if take_profit is not None:
            replaced_types.add("TAKE_PROFIT_MARKET")
        warnings = await self.cancel_protective_orders(symbol, order_types=replaced_types)

        entry_side: OrderSide = "buy" if position.signed_contracts > 0 else "sell"
        outcome = await self.place_protective_orders(
            symbol,
            entry_side,
            abs(position.contracts),
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        outcome.warnings[:0] = warnings
        return outcome

    async def cancel_protective_orders(
        self,
        symbol: str,
        order_types: set[str] | None = None,
    ) -> list[str]:
        """Cancel resting reduce-only conditional orders on the symbol."""
        market = self.market_symbol(symbol)
        wanted = order_types if order_types is not None else set(CONDITIONAL_ORDER_TYPES)
        warnings: list[str] = []
        try:
            orders = await self._call(self._venue.fetch_open_orders(market))
        except TradingError as exc:
            self._logger.warning("fetch_open_orders_failed", symbol=symbol, error=str(exc))
            return [f"fetch_open_orders_failed: {exc}"]

        for order in orders:
            if order.type not in wanted or not order.reduce_only:
                continue
            try:
                await self._call(self._venue.cancel_order(order.id, market))
            except TradingError as exc:
                self._logger.warning(
                    "cancel_protective_order_failed",
                    symbol=symbol,
                    order_id=order.id,
                    error=str(exc),
                )
                warnings.append(f"cancel_order_failed: {order.id}: {exc}")
        return warnings

    async def close_position(
        self,
        symbol: BaseSymbol,
        expected_direction: Direction | None = None,
    ) -> CloseOutcome:
        """Net the live position to zero with a reduce-only market order.

        The closing side comes from the venue's signed position size.
        """
        position = await self.live_position(symbol)
        if position is None:
            raise NoOpenPositionError(f"No open position found for {symbol}")

        signed = position.signed_contracts
        direction: Direction = "long" if signed > 0 else "short"
        if expected_direction is not None and expected_direction != direction:
            raise IncompatiblePositionError(
                f"Position on {symbol} is {direction}, expected {expected_direction}"
            )

        side: OrderSide = "sell" if signed > 0 else "buy"
        amount = abs(signed)
        order = await self._call(
            self._venue.create_order(
                self.market_symbol(symbol),
                "market",
                side,
                amount,
                None,
                OrderParams(reduce_only=True),
            )
        )
        executed_price = order.average or order.price or position.mark_price
        log_order_execution(
            self._logger,
            symbol=symbol,
            side=side,
            order_type="market",
            quantity=amount,
            price=executed_price,
            order_id=order.id,
            reduce_only=True,
        )
        warnings = await self.cancel_protective_orders(symbol)
        return CloseOutcome(
            order=order,
            closed_quantity=amount,
            closed_direction=direction,
            entry_price=position.entry_price,
            executed_price=executed_price,
            realized_pnl=(executed_price - position.entry_price) * signed,
            warnings=warnings,
        )

    async def live_position(self, symbol: str) -> VenuePosition | None:
        """Open venue position on the symbol, read under ``venue_timeout``."""
        market = self.market_symbol(symbol)
        positions = await self._call(self._venue.fetch_positions([market]))
        return next(
            (p for p in positions if p.symbol == market and p.contracts != 0 and p.side is not None),
            None,
        )

    async def _call(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, self._settings.venue_timeout)
        except asyncio.TimeoutError as exc:
            raise VenueRejectionError("venue_call_timeout") from exc
