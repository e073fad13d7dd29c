"""
Intent Dispatcher: hand order intents from the risk engine to a broker layer.

The dispatcher resolves each intent's universal instrument id to the broker's
token and passes the intent through unchanged. Option intents resolve their
underlying and carry the contract in intent.symbol. Order placement itself is
the gateway's concern.
"""

import logging
from typing import Any, List, Optional, Protocol, Sequence

from pydantic import BaseModel

from strategy_backtester.instruments.instrument_models import BrokerInstrumentRef
from strategy_backtester.instruments.instrument_resolver import (
    InstrumentResolutionError,
    InstrumentResolver,
)
from strategy_backtester.risk.risk_engine import OrderIntent

logger = logging.getLogger(__name__)


class BrokerGateway(Protocol):
    """Anything that can place an order for a resolved instrument"""

    def submit(self, intent: OrderIntent, ref: BrokerInstrumentRef) -> Any:
        ...


class DispatchResult(BaseModel):
    """Outcome of handing one intent to the gateway"""
    leg_id: str
    cycle: int
    instrument_id: str
    success: bool
    symbol: Optional[str] = None
    broker_token: Optional[str] = None
    broker_response: Any = None
    error_message: Optional[str] = None


class IntentDispatcher:
    """
    Resolves and forwards order intents to a broker gateway.

    Intents are forwarded in the order given. An intent whose instrument cannot
    be resolved is not sent; the failure is reported in its DispatchResult.
    """

    def __init__(self, gateway: BrokerGateway, resolver: InstrumentResolver, broker_id: str):
        self.gateway = gateway
        self.resolver = resolver
        self.broker_id = broker_id

        logger.info(f"IntentDispatcher initialized for broker {broker_id}")

    def dispatch(self, intents: Sequence[OrderIntent]) -> List[DispatchResult]:
        results = []
        for intent in intents:
            try:
                ref = self.resolver.resolve(intent.instrument_id, self.broker_id)
            except InstrumentResolutionError as e:
                logger.error(f"Cannot dispatch {intent.intent_type.value} for {intent.leg_id}: {e}")
                results.append(DispatchResult(
                    leg_id=intent.leg_id,
                    cycle=intent.cycle,
                    instrument_id=intent.instrument_id,
                    success=False,
                    error_message=str(e),
                ))
                continue

            response = self.gateway.submit(intent, ref)
            logger.info(f"Dispatched {intent.intent_type.value} {intent.action.value} {intent.quantity} "
                        f"{intent.symbol or ref.symbol} ({ref.token}) for {intent.leg_id}")
            results.append(DispatchResult(
                leg_id=intent.leg_id,
                cycle=intent.cycle,
                instrument_id=intent.instrument_id,
                success=True,
                symbol=intent.symbol or ref.symbol,
                broker_token=ref.token,
                broker_response=response,
            ))
        return results
