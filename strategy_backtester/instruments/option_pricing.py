"""
Index option contracts for option legs.

A CE/PE leg is written on its strategy's underlying: the strike is picked from
the underlying price at entry (ATM, ITM n or OTM n points), the contract runs to
its weekly, monthly or quarterly expiry (Thursday 15:30 IST) and is priced on
every bar from the underlying's price (Black-Scholes, zero rates, one
configured volatility).
"""

import calendar
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Sequence

from strategy_backtester.instruments.instrument_resolver import parse_instrument_id
from strategy_backtester.strategy.strategy_types import OPTION_LEG_TYPES

logger = logging.getLogger(__name__)

# Normalized underlying name -> exchange option root
OPTION_ROOTS: Dict[str, str] = {
    'NIFTY': 'NIFTY',
    'NIFTY50': 'NIFTY',
    'NIFTYBANK': 'BANKNIFTY',
    'BANKNIFTY': 'BANKNIFTY',
    'FINNIFTY': 'FINNIFTY',
    'NIFTYFIN': 'FINNIFTY',
    'NIFTYFINSERVICE': 'FINNIFTY',
    'NIFTYFINANCIAL': 'FINNIFTY',
    'NIFTYFINANCIALSERVICES': 'FINNIFTY',
    'SENSEX': 'SENSEX',
}

STRIKE_STEPS: Dict[str, int] = {
    'NIFTY': 50,
    'BANKNIFTY': 100,
    'FINNIFTY': 50,
    'SENSEX': 100,
}
DEFAULT_STRIKE_STEP = 50

WEEKLY_EXPIRY_WEEKDAY = 3  # Thursday
EXPIRY_HOUR, EXPIRY_MINUTE = 15, 30
MIN_OPTION_PRICE = 0.1
DEFAULT_VOLATILITY = 0.2

_STRIKE_SELECTION = re.compile(r'^(ATM)$|^(ITM|OTM)\s*(\d+)$')


class OptionContractError(ValueError):
    """Strike selection or contract cannot be resolved"""
    pass


def option_root(instrument_id: str) -> str:
    """Exchange option root for an underlying, e.g. nifty-bank-idx-nse -> BANKNIFTY"""
    symbol, _, _ = parse_instrument_id(instrument_id)
    normalized = re.sub(r'[^A-Z0-9]', '', symbol)
    return OPTION_ROOTS.get(normalized, normalized)


def strike_step(root: str) -> int:
    return STRIKE_STEPS.get(root, DEFAULT_STRIKE_STEP)


def parse_strike_selection(selection: str) -> int:
    """
    Strike offset in points from ATM; positive is out of the money.

    Accepts 'ATM', 'ITM 100', 'OTM200' (case-insensitive).
    """
    match = _STRIKE_SELECTION.match((selection or '').strip().upper())
    if match is None:
        raise OptionContractError(f"Unsupported strike selection '{selection}' (use ATM, ITM n or OTM n)")
    if match.group(1):
        return 0
    points = int(match.group(3))
    return points if match.group(2) == 'OTM' else -points


def atm_strike(underlying_price: float, step: int) -> int:
    # Half a step rounds up
    return int(math.floor(underlying_price / step + 0.5)) * step


def calculate_strike(underlying_price: float, selection: str, option_type: str, step: int) -> int:
    """
    Strike for a selection: calls go out of the money upwards, puts downwards.

    Raises:
        OptionContractError: Bad selection or a strike off the exchange grid
    """
    offset = parse_strike_selection(selection)
    direction = 1 if option_type == 'CE' else -1
    strike = atm_strike(underlying_price, step) + direction * offset
    if strike <= 0 or strike % step != 0:
        raise OptionContractError(f"Strike {strike} is not a positive multiple of {step} (selection '{selection}')")
    return strike


def weekly_expiry(timestamp: datetime) -> datetime:
    """Expiry moment of the weekly contract trading at timestamp (Thursday 15:30, rolling after the close)"""
    expiry = timestamp.replace(hour=EXPIRY_HOUR, minute=EXPIRY_MINUTE, second=0, microsecond=0)
    days_ahead = (WEEKLY_EXPIRY_WEEKDAY - timestamp.weekday()) % 7
    expiry += timedelta(days=days_ahead)
    if expiry <= timestamp:
        expiry += timedelta(days=7)
    return expiry


def _last_expiry_day(year: int, month: int) -> int:
    last_day = calendar.monthrange(year, month)[1]
    return last_day - (calendar.weekday(year, month, last_day) - WEEKLY_EXPIRY_WEEKDAY) % 7


def monthly_expiry(timestamp: datetime, months: Sequence[int] = tuple(range(1, 13))) -> datetime:
    """Last Thursday 15:30 of the first listed month whose expiry is still ahead"""
    for offset in range(13):
        years_ahead, month_index = divmod(timestamp.month - 1 + offset, 12)
        year, month = timestamp.year + years_ahead, month_index + 1
        if month not in months:
            continue
        expiry = timestamp.replace(
            year=year, month=month, day=_last_expiry_day(year, month),
            hour=EXPIRY_HOUR, minute=EXPIRY_MINUTE, second=0, microsecond=0,
        )
        if expiry > timestamp:
            return expiry
    raise OptionContractError(f"No expiry in months {tuple(months)} after {timestamp}")


def quarterly_expiry(timestamp: datetime) -> datetime:
    return monthly_expiry(timestamp, months=(3, 6, 9, 12))


EXPIRY_RULES: Dict[str, Callable[[datetime], datetime]] = {
    'weekly': weekly_expiry,
    'monthly': monthly_expiry,
    'quarterly': quarterly_expiry,
}


def contract_expiry(timestamp: datetime, expiry: str = "Weekly") -> datetime:
    rule = EXPIRY_RULES.get((expiry or '').strip().lower())
    if rule is None:
        raise OptionContractError(f"Unsupported expiry '{expiry}' (use Weekly, Monthly or Quarterly)")
    return rule(timestamp)


def years_to_expiry(timestamp: datetime, expiry: datetime) -> float:
    return max((expiry - timestamp).total_seconds(), 0.0) / (365 * 24 * 3600)


def option_symbol(root: str, expiry: datetime, strike: int, option_type: str) -> str:
    """Exchange-style symbol, e.g. BANKNIFTY01FEB2448000CE"""
    return f"{root}{expiry.strftime('%d%b%y').upper()}{strike}{option_type}"


def _normal_cdf(x: float) -> float:
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


def option_price(
    underlying_price: float,
    strike: float,
    years: float,
    option_type: str,
    volatility: float = DEFAULT_VOLATILITY
) -> float:
    """
    Black-Scholes premium with zero rates and dividends, never below MIN_OPTION_PRICE.

    At or after expiry the premium is the intrinsic value.
    """
    if option_type not in OPTION_LEG_TYPES:
        raise OptionContractError(f"Not an option type: {option_type}")

    if years <= 0 or volatility <= 0:
        if option_type == 'CE':
            premium = max(0.0, underlying_price - strike)
        else:
            premium = max(0.0, strike - underlying_price)
        return max(MIN_OPTION_PRICE, premium)

    spread = volatility * math.sqrt(years)
    d1 = (math.log(underlying_price / strike) + 0.5 * spread * spread) / spread
    d2 = d1 - spread
    if option_type == 'CE':
        premium = underlying_price * _normal_cdf(d1) - strike * _normal_cdf(d2)
    else:
        premium = strike * _normal_cdf(-d2) - underlying_price * _normal_cdf(-d1)
    return max(MIN_OPTION_PRICE, premium)


@dataclass(frozen=True)
class OptionContract:
    """One listed option a leg holds from entry to exit"""
    root: str
    option_type: str
    strike: int
    expiry: datetime
    volatility: float = DEFAULT_VOLATILITY

    @property
    def symbol(self) -> str:
        return option_symbol(self.root, self.expiry, self.strike, self.option_type)

    def price(self, underlying_price: float, timestamp: datetime) -> float:
        return option_price(
            underlying_price, self.strike, years_to_expiry(timestamp, self.expiry), self.option_type, self.volatility
        )


@dataclass(frozen=True)
class OptionLegSpec:
    """How an option leg picks its contract when its cycle enters"""
    root: str
    option_type: str
    strike_selection: str = "ATM"
    expiry: str = "Weekly"
    volatility: float = DEFAULT_VOLATILITY

    @classmethod
    def for_underlying(
        cls,
        instrument_id: str,
        option_type: str,
        strike_selection: str = "ATM",
        expiry: str = "Weekly",
        volatility: float = DEFAULT_VOLATILITY
    ) -> "OptionLegSpec":
        """
        Raises:
            OptionContractError: Not an option type, or an unsupported strike or expiry
        """
        if option_type not in OPTION_LEG_TYPES:
            raise OptionContractError(f"Not an option type: {option_type}")
        root = option_root(instrument_id)
        step = strike_step(root)
        if parse_strike_selection(strike_selection) % step != 0:
            raise OptionContractError(f"Strike selection '{strike_selection}' is off the {root} strike grid of {step}")
        if (expiry or '').strip().lower() not in EXPIRY_RULES:
            raise OptionContractError(f"Unsupported expiry '{expiry}' (use Weekly, Monthly or Quarterly)")
        return cls(root, option_type, strike_selection, expiry, volatility)

    def contract_at(self, underlying_price: float, timestamp: datetime) -> OptionContract:
        strike = calculate_strike(underlying_price, self.strike_selection, self.option_type, strike_step(self.root))
        expiry = contract_expiry(timestamp, self.expiry)
        contract = OptionContract(self.root, self.option_type, strike, expiry, self.volatility)
        logger.debug(f"{timestamp} resolved {contract.symbol} from underlying {underlying_price:.2f}")
        return contract


def validate_option_leg(instrument_id: str, option_type: str, strike_selection: str, expiry: str) -> Optional[str]:
    """Error message for an option leg that cannot be priced, None when it can"""
    try:
        OptionLegSpec.for_underlying(instrument_id, option_type, strike_selection, expiry)
    except ValueError as e:
        return str(e)
    return None
