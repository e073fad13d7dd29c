"""
Strategy Validator

Turns a client strategy document into a normalized Strategy. Every structural
and cross-reference problem is collected and reported together; label
normalization happens here and nowhere else.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from strategy_backtester.feature_engineering.indicators import (
    CHART_TYPES,
    INDICATOR_DEFAULT_PERIODS,
    canonical_comparator,
    canonical_indicator,
)
from strategy_backtester.instruments.instrument_resolver import InstrumentResolver, LegValidationError
from strategy_backtester.instruments.option_pricing import validate_option_leg
from strategy_backtester.strategy.strategy_models import (
    WEEKDAYS,
    RiskManagementDocument,
    StrategyDocument,
)
from strategy_backtester.strategy.strategy_types import (
    DISABLED,
    OPTION_LEG_TYPES,
    UNDERLYING_LEG_TYPES,
    EntryCondition,
    IndicatorBasedStrategy,
    LockAndTrail,
    NoTrailing,
    OrderLeg,
    ProfitTrailing,
    RiskManagement,
    Side,
    Strategy,
    StrategyInstrument,
    Threshold,
    ThresholdType,
    TimeBasedStrategy,
    TrailProfit,
)

logger = logging.getLogger(__name__)

# Interval label -> bar interval code
SUPPORTED_INTERVALS = {
    '1 min': '1m',
    '3 min': '3m',
    '5 min': '5m',
    '10 min': '10m',
    '15 min': '15m',
    '30 min': '30m',
    '1h': '1h',
    '1 hour': '1h',
}

_TRAILING_LABELS = {
    '': 'no_trailing',
    'none': 'no_trailing',
    'no': 'no_trailing',
    'no trailing': 'no_trailing',
    'trail profit': 'trail_profit',
    'trailing profit': 'trail_profit',
    'trail': 'trail_profit',
    'lock and trail': 'lock_and_trail',
    'lock & trail': 'lock_and_trail',
    'lock n trail': 'lock_and_trail',
    'lock trail': 'lock_and_trail',
    'lock fix profit': 'lock_fix_profit',
    'lock fixed profit': 'lock_fix_profit',
    'lock profit': 'lock_fix_profit',
}

_THRESHOLD_LABELS = {
    'points': ThresholdType.POINTS,
    'on points': ThresholdType.POINTS,
    'point': ThresholdType.POINTS,
    'pts': ThresholdType.POINTS,
    'on price': ThresholdType.POINTS,
    'price': ThresholdType.POINTS,
    'percentage': ThresholdType.PERCENTAGE,
    'on percentage': ThresholdType.PERCENTAGE,
    'percentage(%)': ThresholdType.PERCENTAGE,
    'percent': ThresholdType.PERCENTAGE,
    '%': ThresholdType.PERCENTAGE,
    'amount': ThresholdType.AMOUNT,
    'on amount': ThresholdType.AMOUNT,
}

_TRANSACTION_TYPES = {
    'only long': Side.BUY,
    'long': Side.BUY,
    'both side': Side.BUY,
    'both sides': Side.BUY,
    'only short': Side.SELL,
    'short': Side.SELL,
}

# Strikes are picked in points from ATM
SUPPORTED_STRIKE_REFERENCES = ('ATM', 'ATM PT')


class StrategyValidationError(Exception):
    """Raised when a strategy fails structural or cross-reference validation"""

    def __init__(self, errors: List[str], per_leg_errors: Optional[List[LegValidationError]] = None):
        self.errors = errors
        self.per_leg_errors = per_leg_errors or []
        super().__init__("; ".join(errors))


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    per_leg_errors: List[LegValidationError] = field(default_factory=list)
    strategy: Optional[Strategy] = None

    def raise_for_errors(self) -> Strategy:
        """Return the normalized strategy or raise StrategyValidationError"""
        if not self.valid:
            raise StrategyValidationError(self.errors, self.per_leg_errors)
        return self.strategy


def _label_key(label: Optional[str]) -> str:
    return re.sub(r'[\s_\-]+', ' ', (label or '').strip().lower())


def normalize_trailing_label(label: Optional[str]) -> str:
    """
    Map a free-form trailing label to one of no_trailing, trail_profit,
    lock_and_trail or lock_fix_profit.

    Raises:
        StrategyValidationError: Unknown label
    """
    key = _label_key(label)
    if key not in _TRAILING_LABELS:
        raise StrategyValidationError([f"Unknown profit trailing type '{label}'"])
    return _TRAILING_LABELS[key]


def normalize_threshold_label(label: Optional[str]) -> ThresholdType:
    """Map a stop-loss/target type label to POINTS, PERCENTAGE or AMOUNT"""
    if label is None:
        return ThresholdType.POINTS
    key = (label or '').strip().lower().replace('_', ' ')
    if key not in _THRESHOLD_LABELS:
        raise StrategyValidationError([f"Unknown stop-loss/target type '{label}'"])
    return _THRESHOLD_LABELS[key]


def _parse_time(value: Optional[str], name: str, errors: List[str], required: bool = False) -> Optional[time]:
    if value is None or not str(value).strip():
        if required:
            errors.append(f"{name} is required")
        return None
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(str(value).strip(), fmt).time()
        except ValueError:
            continue
    errors.append(f"{name}: invalid time '{value}', expected HH:MM")
    return None


def _trail_within_step(fields: dict, errors: List[str]) -> bool:
    # A larger trail would put the stop beyond the price that earned the step
    if fields['trail_profit_by'] > fields['on_every_increase_of']:
        errors.append(
            f"risk_management.profit_trailing: trail_profit_by {fields['trail_profit_by']} "
            f"cannot exceed on_every_increase_of {fields['on_every_increase_of']}"
        )
        return False
    return True


class StrategyValidator:
    """
    Validates and normalizes strategy documents.

    Checks:
    1. Document parses and its type is known
    2. Trading window and trading days are consistent
    3. Legs / instruments / entry conditions are well formed
    4. Risk management and trailing parameters are complete and non-negative
    5. Every referenced instrument resolves on the target broker
    """

    def __init__(self, resolver: Optional[InstrumentResolver] = None, broker_id: Optional[str] = None):
        self.resolver = resolver
        self.broker_id = broker_id

    def validate(self, document: Union[dict, StrategyDocument], broker_id: Optional[str] = None) -> ValidationResult:
        """
        Validate a strategy document.

        Args:
            document: Raw dict or parsed StrategyDocument
            broker_id: Broker to resolve instruments on (defaults to the validator's broker)

        Returns:
            ValidationResult; strategy is set only when valid
        """
        if isinstance(document, dict):
            try:
                document = StrategyDocument.model_validate(document)
            except PydanticValidationError as e:
                errors = [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ]
                logger.error(f"Strategy document rejected: {len(errors)} error(s)")
                return ValidationResult(valid=False, errors=errors)

        errors: List[str] = []
        strategy_type = self._normalize_type(document.type, errors)

        start_time = _parse_time(document.start_time, 'start_time', errors, required=True)
        square_off_time = _parse_time(document.square_off_time, 'square_off_time', errors, required=True)
        if start_time and square_off_time and start_time >= square_off_time:
            errors.append(f"start_time {start_time} must be before square_off_time {square_off_time}")

        trading_days = self._normalize_trading_days(document.trading_days, errors)
        risk = self._build_risk(document.risk_management, start_time, square_off_time, errors)
        interval = SUPPORTED_INTERVALS.get(_label_key(document.interval))
        if interval is None:
            errors.append(f"Unsupported interval '{document.interval}'")

        strategy: Optional[Strategy] = None
        if strategy_type == 'time_based':
            legs = self._build_legs(document, errors)
            if not errors:
                strategy = TimeBasedStrategy(
                    name=document.name,
                    instrument_id=document.instrument.strip().lower(),
                    start_time=start_time,
                    square_off_time=square_off_time,
                    trading_days=trading_days,
                    legs=legs,
                    interval=interval,
                    risk=risk,
                )
        elif strategy_type == 'indicator_based':
            instruments, conditions, side, stop_loss, take_profit, chart_type = \
                self._build_indicator_parts(document, errors)
            if not errors:
                strategy = IndicatorBasedStrategy(
                    name=document.name,
                    instruments=instruments,
                    entry_conditions=conditions,
                    start_time=start_time,
                    square_off_time=square_off_time,
                    trading_days=trading_days,
                    chart_type=chart_type,
                    interval=interval,
                    side=side,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    risk=risk,
                )

        per_leg_errors: List[LegValidationError] = []
        broker_id = broker_id or self.broker_id
        if self.resolver is not None and broker_id and strategy_type is not None:
            instrument_check = self.resolver.validate_for_strategy(document, broker_id)
            per_leg_errors = instrument_check.per_leg_errors
            errors.extend(e.message for e in per_leg_errors)

        if errors:
            logger.error(f"Strategy '{document.name}' validation FAILED with {len(errors)} error(s)")
            for error in errors:
                logger.error(f"  - {error}")
            return ValidationResult(valid=False, errors=errors, per_leg_errors=per_leg_errors)

        logger.info(f"Strategy '{document.name}' validation PASSED ({strategy_type})")
        return ValidationResult(valid=True, strategy=strategy)

    @staticmethod
    def _normalize_type(value: str, errors: List[str]) -> Optional[str]:
        key = _label_key(value).replace(' ', '_')
        if key in ('time_based', 'timebased'):
            return 'time_based'
        if key in ('indicator_based', 'indicatorbased'):
            return 'indicator_based'
        errors.append(f"Unknown strategy type '{value}'")
        return None

    @staticmethod
    def _normalize_trading_days(trading_days, errors: List[str]) -> Tuple[bool, ...]:
        if isinstance(trading_days, dict):
            unknown = [d for d in trading_days if d.lower() not in WEEKDAYS]
            if unknown:
                errors.append(f"Unknown trading day(s): {unknown}")
            lowered = {d.lower(): bool(v) for d, v in trading_days.items()}
            days = tuple(lowered.get(day, False) for day in WEEKDAYS)
        else:
            if len(trading_days) != 7:
                errors.append(f"trading_days must list 7 days, got {len(trading_days)}")
            days = tuple(bool(v) for v in list(trading_days)[:7]) + (False,) * max(0, 7 - len(trading_days))

        if not any(days):
            errors.append("At least one trading day must be active")
        return days

    def _build_threshold(
        self,
        label: Optional[str],
        value: Optional[float],
        percentage: Optional[float],
        name: str,
        errors: List[str]
    ) -> Threshold:
        try:
            threshold_type = normalize_threshold_label(label)
        except StrategyValidationError as e:
            errors.append(f"{name}: {e}")
            return DISABLED

        if threshold_type == ThresholdType.PERCENTAGE and percentage is not None:
            value = percentage
        if value is None:
            return DISABLED
        if value < 0:
            errors.append(f"{name} must be non-negative, got {value}")
            return DISABLED
        if threshold_type == ThresholdType.PERCENTAGE and value > 100:
            errors.append(f"{name} percentage must be at most 100, got {value}")
            return DISABLED
        return Threshold(type=threshold_type, value=float(value))

    def _build_legs(self, document: StrategyDocument, errors: List[str]) -> Tuple[OrderLeg, ...]:
        if not document.instrument or not document.instrument.strip():
            errors.append("Time-based strategy requires an instrument")
        if not document.order_legs:
            errors.append("Time-based strategy requires at least one order leg")

        legs = []
        for i, leg in enumerate(document.order_legs):
            prefix = f"order_legs[{i}]"
            action = leg.action.strip().upper()
            if action not in ('BUY', 'SELL'):
                errors.append(f"{prefix}.action must be BUY or SELL, got '{leg.action}'")
                continue
            if leg.quantity <= 0:
                errors.append(f"{prefix}.quantity must be positive, got {leg.quantity}")

            stop_loss = self._build_threshold(
                leg.stop_loss_type, leg.stop_loss_value, leg.stop_loss_percentage, f"{prefix}.stop_loss", errors
            )
            take_profit = self._build_threshold(
                leg.take_profit_type, leg.take_profit_value, leg.take_profit_percentage, f"{prefix}.take_profit", errors
            )
            instrument_id = (leg.instrument_id or document.instrument or '').strip().lower()

            instrument_type = leg.instrument_type.strip().upper()
            if instrument_type in OPTION_LEG_TYPES:
                reference = leg.strike_price_reference.strip().upper()
                if reference not in SUPPORTED_STRIKE_REFERENCES:
                    errors.append(
                        f"{prefix}.strike_price_reference '{leg.strike_price_reference}' is not supported (use ATM pt)"
                    )
                if instrument_id:
                    problem = validate_option_leg(
                        instrument_id, instrument_type, leg.strike_price_selection, leg.expiry
                    )
                    if problem:
                        errors.append(f"{prefix}: {problem}")
            elif instrument_type not in UNDERLYING_LEG_TYPES:
                errors.append(
                    f"{prefix}.instrument_type must be one of "
                    f"{', '.join(OPTION_LEG_TYPES + UNDERLYING_LEG_TYPES)}, got '{leg.instrument_type}'"
                )

            legs.append(OrderLeg(
                leg_id=f"leg-{i + 1}",
                instrument_id=instrument_id,
                action=Side(action),
                quantity=leg.quantity,
                instrument_type=instrument_type,
                expiry=leg.expiry,
                strike_reference=leg.strike_price_reference,
                strike_selection=leg.strike_price_selection,
                stop_loss=stop_loss,
                take_profit=take_profit,
            ))
        return tuple(legs)

    def _build_indicator_parts(self, document: StrategyDocument, errors: List[str]):
        if not document.instruments:
            errors.append("Indicator-based strategy requires at least one instrument")
        if not document.entry_conditions:
            errors.append("Indicator-based strategy requires at least one entry condition")

        instruments = []
        for i, inst in enumerate(document.instruments):
            if inst.quantity <= 0:
                errors.append(f"instruments[{i}].quantity must be positive, got {inst.quantity}")
            instruments.append(StrategyInstrument(instrument_id=inst.instrument_id.strip().lower(), quantity=inst.quantity))

        conditions = []
        for i, cond in enumerate(document.entry_conditions):
            prefix = f"entry_conditions[{i}]"
            indicator1 = canonical_indicator(cond.indicator1)
            indicator2 = canonical_indicator(cond.indicator2)
            comparator = canonical_comparator(cond.comparator)
            if indicator1 is None:
                errors.append(f"{prefix}.indicator1 '{cond.indicator1}' is not supported")
            if indicator2 is None:
                errors.append(f"{prefix}.indicator2 '{cond.indicator2}' is not supported")
            if comparator is None:
                errors.append(f"{prefix}.comparator '{cond.comparator}' is not supported")
            if 'Number' in (indicator1, indicator2) and cond.value is None:
                errors.append(f"{prefix} compares against a Number but has no value")
            if cond.period is not None and cond.period <= 0:
                errors.append(f"{prefix}.period must be positive, got {cond.period}")
            uses_period = any(INDICATOR_DEFAULT_PERIODS.get(ind) for ind in (indicator1, indicator2) if ind)
            period = cond.period if uses_period else None
            conditions.append(EntryCondition(
                indicator1=indicator1 or cond.indicator1,
                comparator=comparator or cond.comparator,
                indicator2=indicator2 or cond.indicator2,
                period=period,
                value=cond.value,
            ))

        side = _TRANSACTION_TYPES.get(_label_key(document.transaction_type))
        if side is None:
            errors.append(f"Unknown transaction_type '{document.transaction_type}'")
            side = Side.BUY

        chart_type = next((c for c in CHART_TYPES if c.lower() == _label_key(document.chart_type)), None)
        if chart_type is None:
            errors.append(f"Unsupported chart_type '{document.chart_type}'")
            chart_type = 'Candle'

        risk_doc = document.risk_management
        stop_loss = self._build_threshold(
            risk_doc.target_sl_type, risk_doc.stop_loss_on_each_script, None, "stop_loss_on_each_script", errors
        )
        take_profit = self._build_threshold(
            risk_doc.target_sl_type, risk_doc.target_on_each_script, None, "target_on_each_script", errors
        )
        return tuple(instruments), tuple(conditions), side, stop_loss, take_profit, chart_type

    def _build_risk(
        self,
        risk_doc: RiskManagementDocument,
        start_time: Optional[time],
        square_off_time: Optional[time],
        errors: List[str]
    ) -> RiskManagement:
        for name in ('exit_profit_amount', 'exit_loss_amount'):
            value = getattr(risk_doc, name)
            if value is not None and value < 0:
                errors.append(f"risk_management.{name} must be non-negative, got {value}")
        if risk_doc.max_trade_cycle < 1:
            errors.append(f"risk_management.max_trade_cycle must be at least 1, got {risk_doc.max_trade_cycle}")

        no_trade_after = _parse_time(risk_doc.no_trade_after_time, 'risk_management.no_trade_after_time', errors)
        if no_trade_after and start_time and square_off_time:
            if not (start_time < no_trade_after <= square_off_time):
                errors.append(
                    f"no_trade_after_time {no_trade_after} must be after start_time {start_time} "
                    f"and not after square_off_time {square_off_time}"
                )

        return RiskManagement(
            exit_profit_amount=risk_doc.exit_profit_amount or None,
            exit_loss_amount=risk_doc.exit_loss_amount or None,
            no_trade_after_time=no_trade_after,
            max_trade_cycle=max(1, risk_doc.max_trade_cycle),
            profit_trailing=self._build_profit_trailing(risk_doc, errors),
        )

    @staticmethod
    def _build_profit_trailing(risk_doc: RiskManagementDocument, errors: List[str]) -> ProfitTrailing:
        block = risk_doc.profit_trailing
        fields = {
            'profit_reaches': risk_doc.profit_reaches,
            'lock_profit_at': risk_doc.lock_profit_at,
            'on_every_increase_of': risk_doc.every_increase_of,
            'trail_profit_by': risk_doc.trail_profit_by,
        }
        if block is None or isinstance(block, str):
            label = block
        else:
            label = block.type
            for name in fields:
                if getattr(block, name) is not None:
                    fields[name] = getattr(block, name)

        try:
            kind = normalize_trailing_label(label)
        except StrategyValidationError as e:
            errors.append(f"risk_management.profit_trailing: {e}")
            return NoTrailing()

        if kind == 'no_trailing':
            return NoTrailing()

        required = {
            'trail_profit': ('on_every_increase_of', 'trail_profit_by'),
            'lock_and_trail': ('profit_reaches', 'lock_profit_at', 'on_every_increase_of', 'trail_profit_by'),
            'lock_fix_profit': ('profit_reaches', 'lock_profit_at'),
        }[kind]
        problems = []
        for name in required:
            if fields[name] is None:
                problems.append(f"{name} is required for {kind}")
            elif fields[name] < 0:
                problems.append(f"{name} must be non-negative, got {fields[name]}")
        if problems:
            errors.extend(f"risk_management.profit_trailing: {p}" for p in problems)
            return NoTrailing()

        if kind == 'trail_profit':
            if fields['on_every_increase_of'] <= 0 or fields['trail_profit_by'] <= 0:
                errors.append("risk_management.profit_trailing: on_every_increase_of and trail_profit_by must be positive")
                return NoTrailing()
            if not _trail_within_step(fields, errors):
                return NoTrailing()
            return TrailProfit(
                on_every_increase_of=float(fields['on_every_increase_of']),
                trail_by=float(fields['trail_profit_by']),
            )

        profit_reaches = float(fields['profit_reaches'])
        lock_profit_at = float(fields['lock_profit_at'])
        if profit_reaches <= 0:
            errors.append("risk_management.profit_trailing: profit_reaches must be positive")
            return NoTrailing()
        if lock_profit_at > profit_reaches:
            errors.append(
                f"risk_management.profit_trailing: lock_profit_at {lock_profit_at} "
                f"cannot exceed profit_reaches {profit_reaches}"
            )
            return NoTrailing()

        if kind == 'lock_fix_profit':
            return LockAndTrail(profit_reaches=profit_reaches, lock_profit_at=lock_profit_at)

        every = float(fields['on_every_increase_of'])
        trail_by = float(fields['trail_profit_by'])
        if every > 0 and trail_by <= 0:
            errors.append("risk_management.profit_trailing: trail_profit_by must be positive when trailing")
            return NoTrailing()
        if every > 0 and not _trail_within_step(fields, errors):
            return NoTrailing()
        return LockAndTrail(
            profit_reaches=profit_reaches,
            lock_profit_at=lock_profit_at,
            on_every_increase_of=every,
            trail_by=trail_by,
        )
