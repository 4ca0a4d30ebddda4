# autotrader/trading/analyst_client.py
import logging
from typing import Any, Dict, List

import aiohttp
from pydantic import ValidationError

from autotrader.config import Config
from autotrader.errors import DecisionServiceError
from autotrader.trading.models import AccountContext, DecisionResult, TradeProposal

logger = logging.getLogger(__name__)


def parse_decision(payload: Dict[str, Any]) -> DecisionResult:
    proposals: List[TradeProposal] = []
    for raw in payload.get("tradeRecommendations") or []:
        try:
            proposals.append(TradeProposal.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Dropping malformed recommendation {raw!r}: {e}")
    return DecisionResult(text=payload.get("text") or "", trade_recommendations=proposals)


class AnalystClient:
    """Client for the external market-analyst service.

    The analyst may think for minutes, so the request carries no timeout.
    """

    def __init__(self, session: aiohttp.ClientSession, config: Config):
        self.session = session
        self.config = config

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.analyst_token:
            headers["Authorization"] = f"Bearer {self.config.analyst_token}"
            headers["apikey"] = self.config.analyst_token
        return headers

    async def analyze(self, account_id: str, context: AccountContext) -> DecisionResult:
        if not self.config.analyst_url:
            raise DecisionServiceError(account_id, 0, "analyst URL not configured")

        body = {
            "userQuery": self.config.user_query,
            "userBalances": [b.model_dump(mode="json") for b in context.balances],
            "userPositions": [p.as_payload() for p in context.positions],
            "userId": account_id,
        }
        logger.info(f"Calling analyst at: {self.config.analyst_url}")
        async with self.session.post(
            self.config.analyst_url,
            json=body,
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=None),
        ) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise DecisionServiceError(account_id, resp.status, await resp.text())
            payload = await resp.json(content_type=None)

        decision = parse_decision(payload or {})
        logger.info(f"Analyst recommendation count: {len(decision.trade_recommendations)}")
        return decision
