"""
agent-mirror Core: Exchange Connector (Binance USDⓈ-M Futures)

Implements the Exchange contract against the Binance futures REST API with
HMAC-SHA256 signed requests.

Agent tickers (`BTC`) are mapped to contract symbols (`BTCUSDT`) here and
nowhere else.
"""

import hashlib
import hmac
import os
import random
import time
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Optional
from urllib.parse import urlencode
import logging

import requests

from core.exceptions import ExchangeOutcomeUnknown, ExchangeRejection
from core.models import Position
from infra.symbols import canonical_base, to_exchange_symbol

logger = logging.getLogger(__name__)

FAPI_BASE = "https://fapi.binance.com"

# Binance answers -4046 when the requested margin type is already set.
NO_NEED_TO_CHANGE_MARGIN_TYPE = -4046


def _ts_ms() -> int:
    return int(time.time() * 1000)


class BinanceFuturesExchange:
    """
    Binance futures connector.

    Supports:
    - Account data (available balance, open positions)
    - Market data (mark price, symbol filters)
    - Order execution (leverage, margin type, market orders, closes)
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 base_url: str = FAPI_BASE, timeout: float = 10.0, max_retries: int = 3,
                 read_only: bool = True, recv_window: int = 6000):
        self.api_key = api_key or os.getenv("BINANCE_API_KEY", "")
        self.api_secret = (api_secret or os.getenv("BINANCE_API_SECRET", "")).strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.max_retries = max(int(max_retries), 1)
        self.read_only = read_only
        self.recv_window = int(recv_window)

        self._filters_cache: Optional[Dict[str, Dict[str, Decimal]]] = None

        logger.info(f"Initialized BinanceFuturesExchange (read_only={read_only}, base_url={self.base_url})")

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise ExchangeRejection("account", "BINANCE_API_KEY and BINANCE_API_SECRET required for signed requests")

        signed = dict(params)
        signed.setdefault("recvWindow", self.recv_window)
        signed["timestamp"] = _ts_ms()
        query = urlencode(signed, doseq=True)
        signed["signature"] = hmac.new(
            self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return signed

    def _req(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
             signed: bool = False, symbol: str = "") -> Any:
        """
        Make an HTTP request with exponential backoff.

        Retries on 429, 5xx and network errors. Other 4xx responses are not
        retried and surface as ExchangeRejection carrying the Binance code.
        """
        url = self.base_url + path
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                query = self._sign(params or {}) if signed else dict(params or {})
                headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else {}
                response = requests.request(
                    method,
                    url,
                    params=query,
                    headers=headers,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json() if response.text else {}

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code
                if 400 <= status_code < 500 and status_code != 429:
                    code, msg = self._parse_error(e.response)
                    logger.error(f"Binance API client error on {path}: {status_code} code={code} msg={msg}")
                    raise ExchangeRejection(symbol or path, msg, code) from e

                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {path}, attempt {attempt + 1}/{self.max_retries}")
                else:
                    logger.warning(f"Server error ({status_code}) on {path}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {path}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {path}")
        raise ExchangeOutcomeUnknown(symbol or path, f"request failed after {self.max_retries} attempts: {last_exception}")

    @staticmethod
    def _parse_error(response) -> tuple:
        try:
            payload = response.json()
            return payload.get("code"), payload.get("msg") or response.text
        except ValueError:
            return None, (response.text or "")[:500]

    def _require_writable(self, symbol: str) -> None:
        if self.read_only:
            raise ExchangeRejection(symbol, "exchange is read-only")

    # ========== Market data ==========

    def _symbol_filters(self, contract: str) -> Dict[str, Decimal]:
        if self._filters_cache is None:
            info = self._req("GET", "/fapi/v1/exchangeInfo")
            cache: Dict[str, Dict[str, Decimal]] = {}
            for item in info.get("symbols", []):
                filters = {f.get("filterType"): f for f in item.get("filters", [])}
                lot = filters.get("MARKET_LOT_SIZE") or filters.get("LOT_SIZE") or {}
                notional = filters.get("MIN_NOTIONAL") or {}
                cache[item.get("symbol")] = {
                    "step_size": Decimal(str(lot.get("stepSize", "0.001"))),
                    "min_qty": Decimal(str(lot.get("minQty", "0"))),
                    "min_notional": Decimal(str(notional.get("notional", notional.get("minNotional", "0")))),
                }
            self._filters_cache = cache
        filters = self._filters_cache.get(contract)
        if filters is None:
            raise ExchangeRejection(contract, "unknown contract symbol")
        return filters

    def round_quantity(self, symbol: str, quantity: float, price: Optional[float] = None) -> Decimal:
        """Floor quantity to the contract step and enforce minimum size."""
        contract = to_exchange_symbol(symbol)
        filters = self._symbol_filters(contract)
        step = filters["step_size"]
        qty = Decimal(str(abs(quantity)))
        if step > 0:
            qty = (qty / step).to_integral_value(rounding=ROUND_DOWN) * step
            qty = qty.quantize(step)
        if qty <= 0 or qty < filters["min_qty"]:
            raise ExchangeRejection(symbol, f"quantity {quantity} below minimum {filters['min_qty']}")
        if price and filters["min_notional"] > 0 and qty * Decimal(str(price)) < filters["min_notional"]:
            raise ExchangeRejection(symbol, f"notional below minimum {filters['min_notional']}")
        return qty

    def get_mark_price(self, symbol: str) -> float:
        contract = to_exchange_symbol(symbol)
        data = self._req("GET", "/fapi/v1/premiumIndex", {"symbol": contract}, symbol=symbol)
        price = float(data.get("markPrice") or 0.0)
        if price <= 0:
            raise ExchangeRejection(symbol, "no mark price")
        return price

    # ========== Account data ==========

    def get_available_balance(self, asset: str = "USDT") -> float:
        balances = self._req("GET", "/fapi/v2/balance", signed=True)
        for entry in balances or []:
            if entry.get("asset") == asset:
                return float(entry.get("availableBalance") or 0.0)
        return 0.0

    def get_open_position(self, symbol: str) -> Optional[Position]:
        contract = to_exchange_symbol(symbol)
        rows = self._req("GET", "/fapi/v2/positionRisk", {"symbol": contract}, signed=True, symbol=symbol)
        for row in rows or []:
            amount = float(row.get("positionAmt") or 0.0)
            if row.get("symbol") != contract or amount == 0:
                continue
            return Position(
                symbol=canonical_base(symbol),
                entry_price=float(row.get("entryPrice") or 0.0),
                quantity=amount,
                leverage=float(row.get("leverage") or 1.0),
                current_price=float(row.get("markPrice") or 0.0),
                unrealized_pnl=float(row.get("unRealizedProfit") or 0.0),
                margin=float(row.get("isolatedMargin") or 0.0),
            )
        return None

    # ========== Trading ==========

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._require_writable(symbol)
        contract = to_exchange_symbol(symbol)
        self._req("POST", "/fapi/v1/leverage", {"symbol": contract, "leverage": int(leverage)},
                  signed=True, symbol=symbol)
        logger.info(f"Set leverage {contract} -> {int(leverage)}x")

    def set_margin_mode(self, symbol: str, mode: str) -> None:
        self._require_writable(symbol)
        contract = to_exchange_symbol(symbol)
        try:
            self._req("POST", "/fapi/v1/marginType", {"symbol": contract, "marginType": mode.upper()},
                      signed=True, symbol=symbol)
            logger.info(f"Set margin type {contract} -> {mode.upper()}")
        except ExchangeRejection as exc:
            if exc.code != NO_NEED_TO_CHANGE_MARGIN_TYPE:
                raise
            logger.debug(f"Margin type for {contract} already {mode.upper()}")

    def place_market_order(self, symbol: str, side: str, quantity: float,
                           reduce_only: bool = False) -> str:
        self._require_writable(symbol)
        contract = to_exchange_symbol(symbol)
        qty = self.round_quantity(symbol, quantity)
        params = {
            "symbol": contract,
            "side": side.upper(),
            "type": "MARKET",
            "quantity": format(qty, "f"),
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        logger.warning(f"PLACING MARKET ORDER: {side.upper()} {params['quantity']} {contract}"
                       f"{' (reduce-only)' if reduce_only else ''}")
        result = self._req("POST", "/fapi/v1/order", params, signed=True, symbol=symbol)
        order_id = result.get("orderId")
        if order_id is None:
            raise ExchangeOutcomeUnknown(symbol, f"order accepted without id: {result}")
        return str(order_id)

    def close_position(self, symbol: str) -> Optional[str]:
        """Close the live position with a reduce-only market order; None if already flat."""
        self._require_writable(symbol)
        position = self.get_open_position(symbol)
        if position is None:
            logger.info(f"No open position to close for {symbol}")
            return None
        side = "SELL" if position.quantity > 0 else "BUY"
        return self.place_market_order(symbol, side, abs(position.quantity), reduce_only=True)
