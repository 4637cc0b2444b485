"""
Gateway Selector

Pure routing of (currency, direction) to a registered adapter. The routing
tables come from SettlementConfig; validate() runs at startup so an
incomplete table fails the boot instead of a payment.
"""

import logging
from typing import Dict, List, Mapping, Optional, Union

from core.config import SettlementConfig

from ..models import GatewayName, OperationKind
from ..protocols import (
    GatewayConfigurationError,
    PaymentGatewayProtocol,
    UnknownGatewayError,
    UnsupportedCurrencyError,
)

logger = logging.getLogger(__name__)


class GatewaySelector:
    """Chooses the adapter for a currency and direction"""

    def __init__(self, gateways: Mapping[GatewayName, PaymentGatewayProtocol], config: SettlementConfig):
        self.gateways: Dict[GatewayName, PaymentGatewayProtocol] = dict(gateways)
        self.config = config
        self._routes = {
            OperationKind.CHARGE: self._parse_routes(config.charge_routes),
            OperationKind.PAYOUT: self._parse_routes(config.payout_routes),
        }

    @staticmethod
    def _parse_routes(routes: Mapping[str, str]) -> Dict[str, GatewayName]:
        parsed = {}
        for currency, gateway in routes.items():
            try:
                parsed[currency.upper()] = GatewayName(gateway.lower())
            except ValueError:
                raise GatewayConfigurationError(f"Route {currency}:{gateway} names an unknown gateway")
        return parsed

    def get(self, name: Union[GatewayName, str]) -> PaymentGatewayProtocol:
        """Adapter by name (UnknownGatewayError if not registered)"""
        try:
            gateway_name = GatewayName(str(name.value if isinstance(name, GatewayName) else name).lower())
        except ValueError:
            raise UnknownGatewayError(f"Unknown gateway: {name}")
        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            raise UnknownGatewayError(f"Gateway not enabled: {gateway_name.value}")
        return gateway

    def select(
        self,
        currency: str,
        kind: OperationKind,
        preferred: Optional[Union[GatewayName, str]] = None,
    ) -> PaymentGatewayProtocol:
        """
        Pick the adapter for a currency and direction.

        A preferred gateway (payer's choice, bank account's rail) wins when it is
        registered and supports the currency; otherwise the routing table decides.

        Raises:
            UnsupportedCurrencyError: no route, or the routed adapter cannot move the currency
        """
        currency = currency.upper()

        if preferred:
            try:
                gateway = self.get(preferred)
            except UnknownGatewayError:
                logger.warning(f"Preferred gateway {preferred} unavailable, using routing table")
            else:
                if gateway.supports(currency, kind):
                    return gateway
                logger.warning(f"Preferred gateway {preferred} cannot {kind.value} {currency}, using routing table")

        gateway_name = self._routes[kind].get(currency)
        if gateway_name is None or gateway_name not in self.gateways:
            raise UnsupportedCurrencyError(
                f"No {kind.value} gateway for {currency}", currency=currency, kind=kind.value
            )

        gateway = self.gateways[gateway_name]
        if not gateway.supports(currency, kind):
            raise UnsupportedCurrencyError(
                f"{gateway_name.value} cannot {kind.value} {currency}", currency=currency, kind=kind.value
            )
        return gateway

    def validate(self) -> None:
        """
        Check routing totality: every supported currency has a charge and a
        payout route to an enabled adapter that supports it.

        Raises:
            GatewayConfigurationError: listing every gap
        """
        problems: List[str] = []
        for currency in self.config.supported_currencies:
            for kind in (OperationKind.CHARGE, OperationKind.PAYOUT):
                gateway_name = self._routes[kind].get(currency)
                if gateway_name is None:
                    problems.append(f"{currency} has no {kind.value} route")
                elif gateway_name not in self.gateways:
                    problems.append(f"{currency} {kind.value} routes to disabled gateway {gateway_name.value}")
                elif not self.gateways[gateway_name].supports(currency, kind):
                    problems.append(f"{gateway_name.value} cannot {kind.value} {currency}")

        if problems:
            raise GatewayConfigurationError("Gateway routing incomplete: " + "; ".join(problems))

        logger.info(
            f"Gateway routing validated for {', '.join(self.config.supported_currencies)} "
            f"via {', '.join(g.value for g in self.gateways)}"
        )


__all__ = ["GatewaySelector"]
