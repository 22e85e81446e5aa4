from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import List, Optional

from libs.common.decision import (
    Decision,
    ExecutionState,
    decide,
    fill_update,
    revert_claim,
)
from libs.common.errors import truncate_message
from libs.common.models import (
    Action,
    BotExecutionConfig,
    BotStatus,
    IndicatorSnapshot,
    OrderStatus,
    TradeRecord,
)
from services.executor.execution import OrderOutcome, execute_order

log = logging.getLogger(__name__)


class ExecutionController:
    """
    Un appel = un bot x un snapshot.
    Chaque action passe par: décision pure -> claim (CAS) -> ordre -> trade log -> réconciliation.
    """

    def __init__(self, store, gateway, trade_log):
        self.store = store
        self.gateway = gateway
        self.trade_log = trade_log

    async def process(self, config: BotExecutionConfig, snapshot: IndicatorSnapshot,
                      now: Optional[datetime] = None) -> List[TradeRecord]:
        if config.status is not BotStatus.ACTIVE:
            return []
        now = now or datetime.now(timezone.utc)
        state = await self.store.load(config.bot_id)
        records: List[TradeRecord] = []
        for action in (Action.BUY, Action.SELL):
            rec = await self.attempt(config, state, action, snapshot, now)
            if rec is not None:
                records.append(rec)
                # la vente suivante doit voir le claim et le prix d'entrée du fill
                state = await self.store.load(config.bot_id)
        return records

    async def attempt(self, config: BotExecutionConfig, state: ExecutionState, action: Action,
                      snapshot: IndicatorSnapshot, now: datetime) -> Optional[TradeRecord]:
        decision = decide(config, state, action, snapshot, now)
        if decision is None:
            return None

        claim = decision.claim
        if claim is not None:
            won = await self.store.compare_and_set(config.bot_id, claim.field, claim.expected, claim.new)
            if not won:
                log.debug("[claim] %s %s lost on %s", config.bot_id, action.value, claim.field)
                return None

        try:
            outcome = await execute_order(
                self.gateway, config.account, config.pair, action, decision.sizing, snapshot.price
            )
        except Exception as e:
            log.exception("[exec] %s %s order attempt crashed", config.bot_id, action.value)
            outcome = OrderOutcome(OrderStatus.FAILED, fail_reason=truncate_message(e))

        record = TradeRecord(
            bot_id=config.bot_id,
            timestamp=now,
            pair=config.pair,
            action=action,
            price=snapshot.price,
            trigger=decision.trigger,
            sizing=decision.sizing,
            order_status=outcome.status,
            order_id=outcome.order_id,
            fail_reason=outcome.fail_reason,
            indicators_snapshot=snapshot,
        )
        log.info("[exec] %s %s %s @ %s trigger=%s status=%s", config.bot_id, action.value,
                 config.pair, snapshot.price, decision.trigger.value, outcome.status.value)
        try:
            await self.trade_log.append(record)
        finally:
            await self._reconcile(config, state, decision, outcome, snapshot.price)
        return record

    async def _reconcile(self, config: BotExecutionConfig, state: ExecutionState,
                         decision: Decision, outcome: OrderOutcome, price: float):
        if outcome.filled:
            upd = fill_update(decision, state, price)
            if upd is not None:
                ok = await self.store.compare_and_set(config.bot_id, upd.field, upd.expected, upd.new)
                if not ok:
                    log.warning("[exec] %s entry price moved concurrently, left as is", config.bot_id)
            return

        if decision.claim is None:
            return
        rev = revert_claim(decision.claim)
        ok = await self.store.compare_and_set(config.bot_id, rev.field, rev.expected, rev.new)
        if not ok:
            log.warning("[claim] %s revert of %s skipped, state moved on", config.bot_id, rev.field)
